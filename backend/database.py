"""
Database Configuration Module
=============================
This module handles all MongoDB database connections and collection definitions
for TrackWise.

The application uses MongoDB for persistent storage of:
- User accounts
- Tasks, notes and reminders
- Daily progress entries
- Chatbot conversation history

Every collection except ``users`` holds owner-scoped records and is only
reached through the repositories returned by ``get_stores``.
"""

import logging

from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import MongoClient
import os
from dotenv import load_dotenv

from store import IdentityStore, OwnedCollection, Stores

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

# MongoDB Configuration
# =====================
# MongoDB connection URL - defaults to local instance if not specified
MONGODB_URL = os.getenv("MONGODB_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "TrackWise")

# Async MongoDB Client
# ====================
# Motor async client used for FastAPI async endpoints
async_client = AsyncIOMotorClient(MONGODB_URL)
async_db = async_client[DATABASE_NAME]

# Sync MongoDB Client
# ===================
# PyMongo sync client used only for index creation at startup
sync_client = MongoClient(MONGODB_URL)
sync_db = sync_client[DATABASE_NAME]

# MongoDB Collections
# ===================

# Users: accounts and authentication data
users_collection = async_db["users"]

# Tasks: to-do items with due date and status
tasks_collection = async_db["tasks"]

# Notes: free-form study notes
notes_collection = async_db["notes"]

# Reminders: dated schedule entries (served under /schedule)
reminders_collection = async_db["reminders"]

# Progress: one entry per user per day (completed tasks, study hours, subjects)
progress_collection = async_db["progress"]

# Chat Messages: chatbot history, one document per message
chat_messages_collection = async_db["chat_messages"]

OWNED_COLLECTIONS = ["tasks", "notes", "reminders", "progress", "chat_messages"]


def init_db():
    """
    Create the indexes the owner-scoped queries rely on.

    Called once during application startup. Failures are logged and do not
    stop the application.
    """
    try:
        sync_db["users"].create_index("email", unique=True)
        sync_db["users"].create_index("created_at")

        for name in OWNED_COLLECTIONS:
            sync_db[name].create_index("user_id")
            sync_db[name].create_index([("user_id", 1), ("created_at", -1)])

        sync_db["tasks"].create_index([("user_id", 1), ("due_date", 1)])
        sync_db["reminders"].create_index([("user_id", 1), ("date", 1)])
        sync_db["progress"].create_index([("user_id", 1), ("date", 1)], unique=True)

        logger.info("Database indexes initialized successfully")
    except Exception as e:
        logger.error("Error initializing database: %s", e)


async def close_db():
    """Close both clients on application shutdown"""
    async_client.close()
    sync_client.close()


def get_identity_store() -> IdentityStore:
    return IdentityStore(users_collection)


def get_stores() -> Stores:
    return Stores(
        tasks=OwnedCollection(tasks_collection, "task"),
        notes=OwnedCollection(notes_collection, "note"),
        reminders=OwnedCollection(reminders_collection, "reminder"),
        progress=OwnedCollection(progress_collection, "progress"),
        chat_messages=OwnedCollection(chat_messages_collection, "chat message"),
    )
