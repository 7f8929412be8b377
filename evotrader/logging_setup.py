"""
Loguru sink configuration shared by the CLI and the API server
"""
import sys

from loguru import logger


def setup_logging(settings) -> None:
    """Configure logging"""
    log_settings = settings.logging
    logger.remove()  # Remove default handler

    # Console logging
    logger.add(
        sys.stderr,
        level=log_settings.log_level,
        format=log_settings.log_format,
    )

    # File logging
    if log_settings.log_to_file:
        log_settings.log_file_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_settings.log_file_path,
            level=log_settings.log_level,
            format=log_settings.log_format,
            rotation=f"{log_settings.log_max_size_mb} MB",
            retention=log_settings.log_backup_count,
        )
