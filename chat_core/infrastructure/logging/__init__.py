from chat_core.infrastructure.logging.logger import logger, setup_logger

__all__ = ["logger", "setup_logger"]
