"""Speech transcription collaborators used by live session hosts."""

import asyncio
import logging
from typing import AsyncIterable, AsyncIterator, List, Optional, Protocol

from multimodal.audio import ensure_audio_file, transcribe_audio

logger = logging.getLogger(__name__)


class SpeechTranscriber(Protocol):
    """Produces cumulative partial transcripts until stopped."""

    def start(self) -> AsyncIterator[str]:
        ...

    async def stop(self) -> None:
        ...


class WhisperChunkTranscriber:
    """
    Transcribes recorded media chunks one by one through Whisper.

    ``chunks`` yields file paths as the recorder rotates them. Each yielded
    value from ``start()`` is the whole transcript so far, matching how a
    speech recognizer reports partial results.
    """

    def __init__(self, chunks: AsyncIterable[str], api_key: Optional[str] = None):
        self._chunks = chunks
        self._api_key = api_key
        self._stopped = asyncio.Event()
        self.parts: List[str] = []

    def _transcribe_chunk(self, path: str) -> str:
        return transcribe_audio(ensure_audio_file(path), api_key=self._api_key)

    async def start(self) -> AsyncIterator[str]:
        self._stopped.clear()
        async for path in self._chunks:
            if self._stopped.is_set():
                break
            try:
                text = await asyncio.to_thread(self._transcribe_chunk, path)
            except Exception as exc:
                logger.warning("Skipping chunk %s after transcription failure: %s", path, exc)
                continue
            if self._stopped.is_set():
                break
            if text:
                self.parts.append(text)
                yield " ".join(self.parts)

    async def stop(self) -> None:
        self._stopped.set()
