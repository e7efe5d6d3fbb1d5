import logging
import sys

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "openai")


def setup_logging(level: str = "INFO") -> None:
    """
    Configures root logging once. Handlers installed by the host (uvicorn,
    pytest) are left alone.
    """
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT, stream=sys.stdout)
    logging.getLogger().setLevel(level.upper())
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
