"""Alert channels used when loads keep failing or recover."""

import logging
import socket
import traceback
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from core.settings import PROJECT_NAME
from datasync.sync_config import AlertingSpec

logger = logging.getLogger(__name__)

SNS_SUBJECT_MAX_LENGTH = 100


class Alerter(Protocol):
    def alert(self, message: str, exc: BaseException | None = None) -> bool:
        ...


def format_alert(message: str, exc: BaseException | None = None) -> str:
    body = f"{message}\n\nHost: {socket.gethostname()}"
    if exc is not None:
        body += "\n\n" + "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return body


class LogAlerter:
    """Alerts go to the log only."""

    def alert(self, message: str, exc: BaseException | None = None) -> bool:
        logger.error("ALERT: %s", message, exc_info=exc)
        return True


class SnsAlerter:
    """Publishes alerts to an SNS topic. Delivery failures are logged, never raised."""

    def __init__(self, topic_arn: str, *, client=None, region_name: str | None = None):
        self.topic_arn = topic_arn
        self._client = client or boto3.client("sns", region_name=region_name)

    def alert(self, message: str, exc: BaseException | None = None) -> bool:
        logger.error("ALERT: %s", message, exc_info=exc)

        subject = f"[{PROJECT_NAME}] {message.splitlines()[0] if message else 'alert'}"
        try:
            self._client.publish(
                TopicArn=self.topic_arn,
                Subject=subject[:SNS_SUBJECT_MAX_LENGTH],
                Message=format_alert(message, exc),
            )
        except (BotoCoreError, ClientError) as e:
            logger.warning("Failed to publish alert to %s: %s", self.topic_arn, e)
            return False
        return True


def create_alerter(spec: AlertingSpec) -> Alerter:
    if spec.kind == "sns":
        return SnsAlerter(spec.topic_arn, region_name=spec.region_name)
    return LogAlerter()
