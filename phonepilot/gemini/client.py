from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, List, Optional

from google import genai
from google.genai import types

from phonepilot.agent.context import ChatTurn
from phonepilot.gemini.prompts import SYSTEM
from phonepilot.util.image import process_image
from phonepilot.util.log import get_logger
from phonepilot.util.paths import LAST_SENT

log = get_logger("phonepilot.gemini")

DEFAULT_MODEL = "gemini-3-flash-preview"

_ROLES = {"user": "user", "model": "model"}


@dataclass
class GeminiTransport:
    """
    Streams model replies for a multi-turn, multi-image conversation.

    Screenshots are resized and overlaid with the 0-1000 coordinate grid
    before upload. Consecutive turns with the same role are merged since the
    API expects alternating roles.
    """

    model: str = DEFAULT_MODEL
    thinking_level: Optional[str] = None
    api_key: Optional[str] = None
    max_dim: int = 1280
    grid: bool = True
    system: str = SYSTEM
    save_last_sent: bool = True
    _client_obj: Optional[genai.Client] = field(default=None, init=False, repr=False)

    def _client(self) -> genai.Client:
        if self._client_obj is None:
            key = self.api_key or os.getenv("GEMINI_API_KEY") or os.getenv("GOOGLE_API_KEY")
            self._client_obj = genai.Client(api_key=key) if key else genai.Client()
        return self._client_obj

    def _config(self) -> types.GenerateContentConfig:
        thinking_cfg = None
        if self.thinking_level:
            thinking_cfg = types.ThinkingConfig(thinking_level=self.thinking_level)
        return types.GenerateContentConfig(
            system_instruction=self.system,
            thinking_config=thinking_cfg,
        )

    def _image_part(self, data: bytes, last: bool) -> types.Part:
        jpeg, w, h = process_image(data, max_dim=self.max_dim, grid=self.grid)
        if last and self.save_last_sent:
            try:
                LAST_SENT.parent.mkdir(parents=True, exist_ok=True)
                LAST_SENT.write_bytes(jpeg)
            except OSError as e:
                log.debug("Could not save %s: %s", LAST_SENT, e)
        log.debug("Image prepared: %dx%d, %dB", w, h, len(jpeg))
        return types.Part.from_bytes(data=jpeg, mime_type="image/jpeg")

    def build_contents(self, turns: List[ChatTurn]) -> List[types.Content]:
        last_image = max((i for i, t in enumerate(turns) if t.image is not None), default=-1)

        contents: List[types.Content] = []
        for i, turn in enumerate(turns):
            role = _ROLES.get(turn.role)
            if role is None:
                raise ValueError(f"unknown chat role {turn.role!r}")

            parts: List[Any] = []
            if turn.image is not None:
                parts.append(self._image_part(turn.image.data, last=(i == last_image)))
            if turn.text:
                parts.append(types.Part.from_text(text=turn.text))
            if not parts:
                continue

            if contents and contents[-1].role == role:
                contents[-1].parts.extend(parts)
            else:
                contents.append(types.Content(role=role, parts=parts))
        return contents

    async def stream_chat(self, turns: List[ChatTurn]) -> AsyncIterator[str]:
        contents = await asyncio.to_thread(self.build_contents, turns)
        client = self._client()

        log.debug("Streaming %s with %d content block(s)", self.model, len(contents))
        stream = await client.aio.models.generate_content_stream(
            model=self.model,
            contents=contents,
            config=self._config(),
        )
        async for chunk in stream:
            text = chunk.text
            if text:
                yield text
