import os
import logging
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Basic Config
SECRET_KEY = os.getenv("SECRET_KEY", "change-me")
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///qisa.db")
APP_ENV = os.getenv("APP_ENV", "development")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5000,http://127.0.0.1:5000").split(",") if o.strip()]
ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "daniel08")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

# AI Configuration
GEMINI_API_KEY = os.getenv('GEMINI_API_KEY')
GEMINI_TEXT_MODEL = os.getenv('GEMINI_TEXT_MODEL', 'gemini-2.5-flash')
GEMINI_IMAGE_MODEL = os.getenv('GEMINI_IMAGE_MODEL', 'gemini-2.0-flash-preview-image-generation')
GEMINI_TIMEOUT = int(os.getenv('GEMINI_TIMEOUT', '60'))
GEMINI_HISTORY_TURNS = int(os.getenv('GEMINI_HISTORY_TURNS', '10'))

# QKoins
INITIAL_QKOINS = int(os.getenv('INITIAL_QKOINS', '0'))
DAILY_REWARD_AMOUNT = int(os.getenv('DAILY_REWARD_AMOUNT', '10'))
DAILY_REWARD_WINDOW_HOURS = int(os.getenv('DAILY_REWARD_WINDOW_HOURS', '24'))
BONUS_AMOUNT = int(os.getenv('BONUS_AMOUNT', '5'))
BONUS_WINDOW_HOURS = int(os.getenv('BONUS_WINDOW_HOURS', '4'))
IMAGE_COST = int(os.getenv('IMAGE_COST', '1'))

# Uploads
MAX_UPLOAD_SIZE = int(os.getenv('MAX_UPLOAD_SIZE', str(10 * 1024 * 1024)))
MAX_UPLOAD_FILES = int(os.getenv('MAX_UPLOAD_FILES', '5'))
UPLOAD_MAX_AGE_SECONDS = int(os.getenv('UPLOAD_MAX_AGE_SECONDS', '3600'))

# Background tasks
PING_URL = os.getenv('PING_URL', 'http://localhost:5000/api/ping')
PING_INTERVAL_SECONDS = int(os.getenv('PING_INTERVAL_SECONDS', str(13 * 60)))
UPLOAD_CLEANUP_INTERVAL_SECONDS = int(os.getenv('UPLOAD_CLEANUP_INTERVAL_SECONDS', str(30 * 60)))

# Paths
BASE_DIR = Path(__file__).resolve().parent
UPLOAD_FOLDER_PATH = BASE_DIR / os.getenv("UPLOAD_FOLDER", "uploads")
UPLOAD_FOLDER_PATH.mkdir(parents=True, exist_ok=True)
UPLOAD_FOLDER = str(UPLOAD_FOLDER_PATH)
