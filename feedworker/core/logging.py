# feedworker/core/logging.py
import logging
import sys
from datetime import datetime

# Module-level default log level, can be changed by setup_logging()
_default_level: int = logging.INFO

_LOGGER_PREFIX = 'feedworker'


class ColoredFormatter(logging.Formatter):
    """Column-aligned, coloured formatter for feedworker loggers"""

    COLORS = {
        'RESET': '\033[0m',
        'LIGHT_BLUE': '\033[94m',
        'WHITE': '\033[97m',
        'GRAY': '\033[90m',
        'GREEN': '\033[92m',
        'YELLOW': '\033[93m',
        'RED': '\033[91m',
        'BRIGHT_RED': '\033[1;91m',
    }

    LEVEL_COLORS = {
        'DEBUG': COLORS['GRAY'],
        'INFO': COLORS['GREEN'],
        'WARNING': COLORS['YELLOW'],
        'ERROR': COLORS['RED'],
        'CRITICAL': COLORS['BRIGHT_RED'],
    }

    def format(self, record: logging.LogRecord) -> str:
        time_str = datetime.fromtimestamp(record.created).strftime('%H:%M:%S')

        # 'feedworker.worker' -> 'worker'
        component = record.name.rsplit('.', 1)[-1]

        # [listener] is the widest component tag we emit
        component_padded = f'[{component}]'.ljust(12)
        level_padded = f'[{record.levelname}]'.ljust(10)

        level_color = self.LEVEL_COLORS.get(record.levelname, self.COLORS['WHITE'])
        reset = self.COLORS['RESET']

        formatted = (
            f"{self.COLORS['LIGHT_BLUE']}[{time_str}]{reset} "
            f"{self.COLORS['WHITE']}{component_padded}{reset}"
            f'{level_color}{level_padded}{reset}'
            f"{self.COLORS['WHITE']}{record.getMessage()}{reset}"
        )

        if record.exc_info:
            formatted += '\n' + self.formatException(record.exc_info)

        return formatted


def set_default_level(level: int) -> None:
    """Set the default log level for new loggers."""
    global _default_level
    _default_level = level


def get_logger(component_name: str) -> logging.Logger:
    """Get a logger for the specified component."""
    logger = logging.getLogger(f'{_LOGGER_PREFIX}.{component_name}')

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ColoredFormatter())
        handler.setLevel(_default_level)
        logger.addHandler(handler)
        logger.setLevel(_default_level)

        # Prevent duplicate logs from parent loggers
        logger.propagate = False

    return logger
