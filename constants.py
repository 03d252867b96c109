import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8000))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FILE = os.getenv("LOG_FILE", None)

MAX_USERNAME_LENGTH = int(os.getenv("MAX_USERNAME_LENGTH", 20))
MAX_MESSAGE_LENGTH = int(os.getenv("MAX_MESSAGE_LENGTH", 500))
MAX_ROOM_NAME_LENGTH = int(os.getenv("MAX_ROOM_NAME_LENGTH", 64))

OUTBOUND_QUEUE_SIZE = int(os.getenv("OUTBOUND_QUEUE_SIZE", 256))
TYPING_TIMEOUT_SECONDS = float(os.getenv("TYPING_TIMEOUT_SECONDS", 1.0))
SLOW_CONSUMER_GRACE_SECONDS = float(os.getenv("SLOW_CONSUMER_GRACE_SECONDS", 5.0))

# 0 means no cap
MAX_ROOM_MEMBERS = int(os.getenv("MAX_ROOM_MEMBERS", 0))
