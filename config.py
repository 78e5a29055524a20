# config.py

import os

from dotenv import load_dotenv

load_dotenv()

# Server side
LISTEN_HOST = os.getenv("LISTEN_HOST", "0.0.0.0")
LISTEN_PORT = int(os.getenv("LISTEN_PORT", "57321"))
POLL_TIMEOUT = float(os.getenv("POLL_TIMEOUT", "0.1"))  # seconds per accept() wait

# Client side
HOST_TO_MONITOR = os.getenv("HOST_TO_MONITOR", "127.0.0.1")
PORT_TO_MONITOR = int(os.getenv("PORT_TO_MONITOR", "57321"))
CHECK_INTERVAL = float(os.getenv("CHECK_INTERVAL", "60"))
MAX_RETRIES = int(os.getenv("MAX_RETRIES", "3"))
CONNECT_TIMEOUT = float(os.getenv("CONNECT_TIMEOUT", "1.0"))

SCHEDULER_WORKERS = int(os.getenv("SCHEDULER_WORKERS", "4"))

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
