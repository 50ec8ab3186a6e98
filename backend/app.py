# Hugging Face Spaces entry point
import os
os.chdir(os.path.dirname(os.path.abspath(__file__)))

# Now import and run the combined FastAPI + Socket.IO app
from main import socket_app

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 7860))
    uvicorn.run(socket_app, host="0.0.0.0", port=port)
