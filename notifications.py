from logging_config import get_logger

logger = get_logger(__name__)


class LoggingNotifier:
    """Delivers one-time codes by writing them to the log.

    Stands in for the email/SMS providers; swap it through `get_notifier`.
    """

    def send_otp(self, channel: str, recipient: str, code: str) -> bool:
        logger.info(f"OTP for {channel} {recipient}: {code}")
        return True


notifier = LoggingNotifier()


def get_notifier():
    return notifier
