import logging
import sys

NOISY_LOGGERS = ("urllib3", "elastic_transport", "elasticsearch", "opensearch", "botocore", "boto3", "kubernetes", "uvicorn.access")


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging once for the whole process."""
    log_level = getattr(logging, (level or "INFO").upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
