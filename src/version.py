import os

APP_VERSION = os.environ.get("APP_VERSION", "dev")
