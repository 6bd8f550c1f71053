"""
Configuration Management for PatchPilot
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import List, Optional


def setup_logging(level: Optional[str] = None):
    """Configure application logging with rotation"""
    from .paths import LOG_DIR

    os.makedirs(LOG_DIR, mode=0o700, exist_ok=True)

    level_name = (level or AppConfig.LOG_LEVEL).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers so repeated calls don't leak file descriptors
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(LOG_DIR, 'patchpilot.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


def _split_urls(raw: Optional[str]) -> List[str]:
    """Split a list of URLs separated by ';', ',' or newlines"""
    if not raw:
        return []
    normalized = raw.replace(';', '\n').replace(',', '\n')
    return [part.strip() for part in normalized.splitlines() if part.strip()]


class AppConfig:
    """Main application configuration"""

    LOG_LEVEL = os.getenv('PATCHPILOT_LOG_LEVEL', 'INFO')

    # Public URL of the admin surface, used for links in notifications
    BASE_URL = os.getenv('PATCHPILOT_BASE_URL', '')

    # Version check sweep
    CHECK_INTERVAL_HOURS = float(os.getenv('PATCHPILOT_CHECK_INTERVAL_HOURS', 2))

    # GitHub
    GITHUB_TOKEN = os.getenv('GITHUB_TOKEN')
    GITHUB_API_URL = os.getenv('GITHUB_API_URL', 'https://api.github.com')
    GITHUB_TIMEOUT_SECONDS = int(os.getenv('GITHUB_TIMEOUT_SECONDS', 15))

    # AI backend (Ollama)
    OLLAMA_URL = os.getenv('OLLAMA_URL')
    OLLAMA_MODEL = os.getenv('OLLAMA_MODEL')
    OLLAMA_NUM_CTX = int(os.getenv('OLLAMA_NUM_CTX', 8192))

    # Remote stack storage (Portainer)
    PORTAINER_URL = os.getenv('PORTAINER_URL')
    PORTAINER_USERNAME = os.getenv('PORTAINER_USERNAME')
    PORTAINER_PASSWORD = os.getenv('PORTAINER_PASSWORD')

    # Notifications
    DISCORD_WEBHOOK_URL = os.getenv('DISCORD_WEBHOOK_URL')
    APPRISE_API_URL = os.getenv('APPRISE_API_URL')
    APPRISE_NOTIFICATION_URLS = _split_urls(os.getenv('APPRISE_NOTIFICATION_URLS'))

    # Command used to drive compose stacks, e.g. "docker compose" or "docker-compose"
    COMPOSE_COMMAND = os.getenv('PATCHPILOT_COMPOSE_COMMAND', 'docker compose')

    # Snapshot written by the inventory scanner, read on every full reset
    INVENTORY_FILE = os.getenv('PATCHPILOT_INVENTORY_FILE')

    @classmethod
    def portainer_configured(cls) -> bool:
        return bool(cls.PORTAINER_URL and cls.PORTAINER_USERNAME and cls.PORTAINER_PASSWORD)

    @classmethod
    def ollama_configured(cls) -> bool:
        return bool(cls.OLLAMA_URL and cls.OLLAMA_MODEL)

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.CHECK_INTERVAL_HOURS <= 0:
            raise ValueError("PATCHPILOT_CHECK_INTERVAL_HOURS must be positive")
        if cls.OLLAMA_NUM_CTX <= 0:
            raise ValueError("OLLAMA_NUM_CTX must be positive")
        if cls.APPRISE_NOTIFICATION_URLS and not cls.APPRISE_API_URL:
            raise ValueError("APPRISE_NOTIFICATION_URLS requires APPRISE_API_URL")
        if not cls.COMPOSE_COMMAND.split():
            raise ValueError("PATCHPILOT_COMPOSE_COMMAND must not be empty")
