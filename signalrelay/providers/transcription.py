"""Voice transcription providers (local whisper.cpp, Groq Whisper)."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
from loguru import logger

from signalrelay.media.images import MediaToolError, run_tool

if TYPE_CHECKING:
    from signalrelay.config.schema import TranscriptionConfig


class TranscriptionError(Exception):
    """Transcription failure with a user-facing short message."""

    def __init__(self, short_message: str, detail: str = ""):
        self.short_message = short_message
        self.detail = detail
        super().__init__(detail or short_message)


class TranscriptionProvider(ABC):
    """Abstract base for voice transcription providers."""

    @abstractmethod
    async def transcribe(self, file_path: str | Path) -> str:
        """Transcribe an audio file. Raises TranscriptionError on failure."""


class WhisperCppTranscriptionProvider(TranscriptionProvider):
    """Local whisper.cpp; audio is converted to 16 kHz mono WAV with ffmpeg first."""

    def __init__(
        self,
        cli_path: str | Path,
        model_path: str | Path,
        language: str = "en",
        ffmpeg_path: str = "ffmpeg",
        threads: int = 4,
    ):
        self.cli_path = Path(cli_path).expanduser()
        self.model_path = Path(model_path).expanduser()
        self.language = language
        self.ffmpeg_path = ffmpeg_path
        self.threads = threads

    @property
    def available(self) -> bool:
        return self.cli_path.exists() and self.model_path.exists()

    async def transcribe(self, file_path: str | Path) -> str:
        path = Path(file_path)
        if not self.available:
            raise TranscriptionError("whisper unavailable", f"whisper.cpp not found at {self.cli_path}")
        if not path.exists() or path.stat().st_size == 0:
            raise TranscriptionError("file not found", f"Audio file not found or empty: {path}")

        wav_path = path.with_name(f"{path.name}.wav")
        try:
            await run_tool(
                self.ffmpeg_path, "-y", "-i", str(path),
                "-ar", "16000", "-ac", "1", "-c:a", "pcm_s16le", str(wav_path),
            )
            stdout = await run_tool(
                str(self.cli_path),
                "-m", str(self.model_path),
                "-f", str(wav_path),
                "--no-timestamps",
                "-t", str(self.threads),
                "-l", self.language,
            )
        except MediaToolError as e:
            logger.error(f"whisper.cpp transcription error: {e}")
            raise TranscriptionError("transcription failed", str(e)) from e
        finally:
            wav_path.unlink(missing_ok=True)

        text = stdout.strip()
        if not text:
            raise TranscriptionError("empty response", "whisper.cpp returned empty text")
        return text


class GroqTranscriptionProvider(TranscriptionProvider):
    """Groq Whisper v3 Turbo transcription."""

    def __init__(self, api_key: str):
        self.api_key = api_key
        self.api_url = "https://api.groq.com/openai/v1/audio/transcriptions"

    async def transcribe(self, file_path: str | Path) -> str:
        path = Path(file_path)
        if not path.exists():
            raise TranscriptionError("file not found", f"Audio file not found: {path}")

        try:
            async with httpx.AsyncClient() as client:
                with open(path, "rb") as f:
                    response = await client.post(
                        self.api_url,
                        headers={"Authorization": f"Bearer {self.api_key}"},
                        files={"file": (path.name, f), "model": (None, "whisper-large-v3-turbo")},
                        data={"response_format": "json"},
                        timeout=60.0,
                    )
                response.raise_for_status()
                text = response.json().get("text", "").strip()
                if not text:
                    raise TranscriptionError("empty response", "Groq returned empty text")
                return text
        except TranscriptionError:
            raise
        except httpx.HTTPStatusError as e:
            detail = f"Groq API {e.response.status_code}: {e.response.text[:200]}"
            logger.error(detail)
            raise TranscriptionError("API error", detail) from e
        except Exception as e:
            logger.error(f"Groq transcription error: {e}")
            raise TranscriptionError("transcription failed", str(e)) from e


def create_transcription_provider(config: TranscriptionConfig) -> TranscriptionProvider | None:
    """Factory: create a transcription provider from config, or None if disabled."""
    if config.provider == "whisper":
        provider = WhisperCppTranscriptionProvider(
            cli_path=config.whisper_cli,
            model_path=config.whisper_model,
            language=config.language,
        )
        if not provider.available:
            logger.warning("whisper.cpp not found, voice transcription disabled")
            return None
        return provider

    if config.provider == "groq":
        if not config.api_key:
            logger.warning("Groq transcription selected but no API key configured")
            return None
        return GroqTranscriptionProvider(config.api_key)

    return None
