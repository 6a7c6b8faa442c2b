# logs.py
import logging
import os


def get_logger(name: str) -> logging.Logger:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    return logging.getLogger(name)


def log_transition(logger: logging.Logger, job_id, old_state, new_state, extra=""):
    logger.info(f"Job {job_id}: {old_state} → {new_state} {extra}".rstrip())
