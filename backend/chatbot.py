"""
Chatbot proxy.

Prompts are forwarded to Groq; when the key is missing or the call fails the
caller gets a canned local reply instead of an error.
"""

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi.concurrency import run_in_threadpool
from groq import Groq

load_dotenv()

logger = logging.getLogger(__name__)

GROQ_API_KEY = os.getenv("GROQ_API_KEY")
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile")

SYSTEM_PROMPT = (
    "You are TrackWise, a friendly study assistant. Answer briefly and "
    "help students plan tasks, notes, schedules and study sessions."
)

FALLBACK_RESPONSE = (
    "I can't reach my knowledge service right now. I can still help with your "
    "tasks, notes, schedule and progress once it's back. Try again in a moment."
)

_client: Optional[Groq] = None


class ChatbotUnavailable(Exception):
    pass


def get_groq_client() -> Optional[Groq]:
    global _client
    if _client is None and GROQ_API_KEY:
        _client = Groq(api_key=GROQ_API_KEY)
    return _client


def _complete(client: Groq, prompt: str) -> str:
    chat_completion = client.chat.completions.create(
        messages=[
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        model=GROQ_MODEL,
        temperature=0.7,
        max_tokens=1024,
    )
    return chat_completion.choices[0].message.content


async def ask_model(prompt: str, client: Optional[Groq] = None) -> str:
    client = client or get_groq_client()
    if client is None:
        raise ChatbotUnavailable("GROQ_API_KEY is not configured")

    try:
        text = await run_in_threadpool(_complete, client, prompt)
    except Exception as e:
        raise ChatbotUnavailable(str(e)) from e

    if not text or not text.strip():
        return "Sorry, I couldn't find an answer to that question."
    return text.strip()


async def answer(prompt: str, client: Optional[Groq] = None) -> str:
    """Model reply, or the local fallback when the model is unavailable"""
    try:
        return await ask_model(prompt, client)
    except ChatbotUnavailable as e:
        logger.warning("Chatbot falling back to local response: %s", e)
        return FALLBACK_RESPONSE
