"""
In-memory collaborators shared by the session tests.
"""

import asyncio
import json
from typing import List, Optional


class FakeTransport:
    """Stand-in for the Twilio media WebSocket."""

    def __init__(self):
        self.sent: List[str] = []
        self.open = True
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self.close_calls = 0
        self._incoming: Optional[asyncio.Queue] = None

    def _queue(self) -> asyncio.Queue:
        if self._incoming is None:
            self._incoming = asyncio.Queue()
        return self._incoming

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_text(self, message: str) -> None:
        if not self.open:
            raise RuntimeError("transport closed")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.close_calls += 1
        self.open = False
        self.close_code = code
        self.close_reason = reason
        self._queue().put_nowait(None)

    async def receive_text(self) -> Optional[str]:
        return await self._queue().get()

    def feed(self, raw: Optional[str]) -> None:
        self._queue().put_nowait(raw)

    def disconnect(self, code: int = 1006) -> None:
        """Simulate the carrier dropping the connection."""
        self.open = False
        self.close_code = code
        self._queue().put_nowait(None)

    def events(self, kind: str) -> List[dict]:
        return [m for m in map(json.loads, self.sent) if m.get("event") == kind]


def start_message(call_sid: str = "CA789012", stream_sid: str = "MZ123456") -> str:
    return json.dumps({
        "event": "start",
        "streamSid": stream_sid,
        "start": {
            "streamSid": stream_sid,
            "callSid": call_sid,
            "accountSid": "AC345678",
            "tracks": ["inbound"],
            "customParameters": {},
        },
    })


def mark_message(name: str, stream_sid: str = "MZ123456") -> str:
    return json.dumps({"event": "mark", "streamSid": stream_sid, "mark": {"name": name}})


def stop_message(stream_sid: str = "MZ123456") -> str:
    return json.dumps({"event": "stop", "streamSid": stream_sid})
