"""
Shared test helpers: region-local datetimes and a recording transport double.

Import as: from funnelbot.tests.helpers import local, RecordingTransport
"""
from datetime import datetime
from typing import List, Optional
from zoneinfo import ZoneInfo

from funnelbot.delivery.transport import SendResult
from funnelbot.errors import TransientDeliveryFailure

TZ = ZoneInfo("Asia/Jerusalem")


def local(year: int, month: int, day: int, hour: int = 0, minute: int = 0) -> datetime:
    """Aware datetime in the business region."""
    return datetime(year, month, day, hour, minute, tzinfo=TZ)


class RecordingTransport:
    """Records sends; fails the first `fail_times` calls with `error`."""

    def __init__(self, fail_times: int = 0, error: Optional[Exception] = None) -> None:
        self.sent: List[dict] = []
        self.fail_times = fail_times
        self.error = error or TransientDeliveryFailure("Transport timeout")
        self.calls = 0

    async def send(self, recipient: str, content: str, media_url: Optional[str] = None) -> SendResult:
        self.calls += 1
        if self.calls <= self.fail_times:
            raise self.error
        self.sent.append({"recipient": recipient, "content": content, "media_url": media_url})
        return SendResult(message_id=f"msg-{self.calls}")
