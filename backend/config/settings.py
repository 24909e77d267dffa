"""
Configuration Management for Harbormaster
Centralizes all environment-based configuration and settings
"""

import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional


class HealthCheckFilter(logging.Filter):
    """Filter out health check requests to reduce log noise"""
    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()

        # For uvicorn access logs, the message format is:
        # 'IP:PORT - "METHOD /path HTTP/1.1" STATUS'
        if '200' in message and '/health' in message:
            return False
        return True


def setup_logging(log_level: Optional[str] = None):
    """Configure application logging with rotation"""
    from .paths import DATA_DIR

    level = getattr(logging, (log_level or AppConfig.LOG_LEVEL).upper(), logging.INFO)

    # Create logs directory with secure permissions
    log_dir = os.path.join(DATA_DIR, 'logs')
    os.makedirs(log_dir, mode=0o700, exist_ok=True)

    root_logger = logging.getLogger()

    # Close and clear any existing handlers to ensure our logging configuration
    # is used and prevent file descriptor leaks
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # Max 10MB per file, keep 14 backups
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'harbormaster.log'),
        maxBytes=10*1024*1024,
        backupCount=14,
        encoding='utf-8'
    )
    file_handler.setLevel(level)
    file_handler.setFormatter(console_formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    uvicorn_access = logging.getLogger("uvicorn.access")
    uvicorn_access.addFilter(HealthCheckFilter())


def get_cors_origins() -> Optional[str]:
    """
    Get CORS origins from environment.

    Returns:
        - Comma-separated string of specific origins if HARBORMASTER_CORS_ORIGINS is set
        - None to use regex pattern (allow all) if empty
    """
    custom_origins = os.getenv('HARBORMASTER_CORS_ORIGINS')
    if custom_origins:
        return custom_origins
    return None


class AppConfig:
    """Main application configuration"""

    # Server settings
    HOST = os.getenv('HARBORMASTER_HOST', '0.0.0.0')
    PORT = int(os.getenv('HARBORMASTER_PORT', 9000))

    CORS_ORIGINS = get_cors_origins()

    # Import centralized paths
    from .paths import (
        DATABASE_PATH as DEFAULT_DATABASE_PATH,
        STACKS_DIR as DEFAULT_STACKS_DIR,
        DOCKER_CONFIG_DIR as DEFAULT_DOCKER_CONFIG_DIR,
    )

    # Database settings
    DATABASE_PATH = os.getenv('HARBORMASTER_DATABASE_PATH', DEFAULT_DATABASE_PATH)

    # Logging
    LOG_LEVEL = os.getenv('HARBORMASTER_LOG_LEVEL', 'INFO')

    # Stack deployment
    STACKS_DIR = DEFAULT_STACKS_DIR
    DOCKER_CONFIG_DIR = DEFAULT_DOCKER_CONFIG_DIR
    DOCKER_BINARY = os.getenv('HARBORMASTER_DOCKER_BINARY', 'docker')
    COMPOSE_TIMEOUT = int(os.getenv('HARBORMASTER_COMPOSE_TIMEOUT', 1800))  # 30 minutes
    REGISTRY_LOGIN_TIMEOUT = int(os.getenv('HARBORMASTER_REGISTRY_LOGIN_TIMEOUT', 60))
    GIT_CLONE_TIMEOUT = int(os.getenv('HARBORMASTER_GIT_CLONE_TIMEOUT', 600))  # 10 minutes

    @classmethod
    def validate(cls):
        """Validate configuration"""
        if cls.PORT < 1 or cls.PORT > 65535:
            raise ValueError(f"Invalid port: {cls.PORT}")

        for name in ('COMPOSE_TIMEOUT', 'REGISTRY_LOGIN_TIMEOUT', 'GIT_CLONE_TIMEOUT'):
            if getattr(cls, name) < 1:
                raise ValueError(f"{name} must be at least 1 second: {getattr(cls, name)}")

        if getattr(logging, cls.LOG_LEVEL.upper(), None) is None:
            raise ValueError(f"Invalid log level: {cls.LOG_LEVEL}")

        return True
