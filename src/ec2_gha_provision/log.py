"""Logging setup and the step-aware logger passed to provisioning components."""
import logging
import os
import sys

SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: str = None):
    """Configure the root logger once for command-line use."""
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        stream=sys.stderr,
    )
    # Transport libraries are chatty at INFO
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("invoke").setLevel(logging.WARNING)
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


class StepLogger(logging.LoggerAdapter):
    """Logger adapter exposing ``success`` and tagging messages with a step.

    Parameters
    ----------
    logger : logging.Logger
        The underlying logger.
    step : str
        Optional step name prepended to every message.

    """

    def __init__(self, logger: logging.Logger, step: str = ""):
        super().__init__(logger, {"step": step})

    def process(self, msg, kwargs):
        step = self.extra.get("step")
        if step:
            msg = f"[{step}] {msg}"
        return msg, kwargs

    def success(self, msg, *args, **kwargs):
        self.log(SUCCESS, msg, *args, **kwargs)

    def bind(self, step: str) -> "StepLogger":
        return StepLogger(self.logger, step)


def get_logger(name: str) -> StepLogger:
    return StepLogger(logging.getLogger(name))


def redact(text: str, secrets=()) -> str:
    """Replace every occurrence of each secret in ``text`` with ``***``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text
