"""JSONL transcript of a chat session: delivered messages and mode changes."""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Set, Union

import aiofiles

from parley.models.chat_message import ChatMessage, DeliveryStatus
from parley.models.connection_state import ModeChangeNotice


logger = logging.getLogger(__name__)

TRANSCRIPT_VERSION = "1.0"


class TranscriptRecorder:
    """
    Appends session events to a JSONL file, one JSON object per line.

    Only delivered messages are written, each at most once per recorder;
    optimistic and failed states are not part of the transcript.
    """

    def __init__(self, path: Union[str, Path], session_id: str):
        self.path = Path(path).expanduser()
        self.session_id = session_id
        self._lock = asyncio.Lock()
        self._recorded: Set[str] = set()

    async def _append(self, entry: Dict[str, Any]) -> None:
        entry = {
            "session_id": self.session_id,
            "recorded_at": datetime.now(timezone.utc).isoformat(),
            "version": TRANSCRIPT_VERSION,
            **entry,
        }
        async with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(self.path, 'a') as f:
                await f.write(json.dumps(entry, default=str) + "\n")

    async def record_message(self, message: ChatMessage) -> bool:
        """Record a delivered message.

        Returns:
            True if a line was written
        """
        if message.delivery_status != DeliveryStatus.DELIVERED or message.key in self._recorded:
            return False
        self._recorded.add(message.key)
        await self._append({"kind": "message", "message": message.to_wire()})
        return True

    async def record_mode_change(self, notice: ModeChangeNotice) -> None:
        await self._append({"kind": "mode_change", "notice": notice.model_dump(mode="json")})

    @staticmethod
    async def load(path: Union[str, Path]) -> List[Dict[str, Any]]:
        """Read all entries; malformed lines are skipped with a warning."""
        transcript = Path(path).expanduser()
        if not transcript.exists():
            return []

        entries: List[Dict[str, Any]] = []
        async with aiofiles.open(transcript, 'r') as f:
            line_number = 0
            async for line in f:
                line_number += 1
                if not line.strip():
                    continue
                try:
                    entries.append(json.loads(line))
                except json.JSONDecodeError as e:
                    logger.warning(f"Skipping malformed transcript line {line_number} in {transcript}: {e}")
        return entries

    @classmethod
    async def load_messages(cls, path: Union[str, Path]) -> List[ChatMessage]:
        """Messages recorded in a transcript, in created_at order."""
        messages = [
            ChatMessage.from_wire(entry["message"])
            for entry in await cls.load(path)
            if entry.get("kind") == "message"
        ]
        return sorted(messages, key=lambda m: m.sort_key())
