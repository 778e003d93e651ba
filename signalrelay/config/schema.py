"""Configuration schema using Pydantic."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class SignalConfig(BaseModel):
    """Signal channel configuration."""
    enabled: bool = False
    account: str = ""  # Our own phone number, e.g. "+15551234567"
    cli_path: str = "signal-cli"
    config_dir: str = "~/.local/share/signal-cli"  # signal-cli data dir; attachments live under it
    assistant_name: str = "Echo"
    allow_from: list[str] = Field(default_factory=list)  # Extra "signal:<id>" chats to deliver
    discovery_command: str = "/chatid"

    health_timeout_s: float = 120.0
    health_poll_s: float = 0.5
    restart_delay_s: float = 5.0
    call_timeout_s: float = 30.0
    max_pending_calls: int = 100
    max_buffer_bytes: int = 1_000_000
    max_outgoing_queue: int = 1000

    typing_keepalive_s: float = 10.0  # Receivers expire the indicator after ~15s
    typing_max_s: float = 120.0
    group_refresh_interval_s: float = 3600.0
    quote_max_chars: int = 100
    container_attachments_dir: str = "/workspace/signal-attachments"

    @property
    def attachments_path(self) -> Path:
        return Path(self.config_dir).expanduser() / "attachments"

    def command(self) -> list[str]:
        """signal-cli invocation for JSON-RPC over stdio."""
        cmd = [self.cli_path]
        if self.config_dir:
            cmd += ["--config", str(Path(self.config_dir).expanduser())]
        return cmd + ["-a", self.account, "-o", "json", "jsonRpc"]


class TranscriptionConfig(BaseModel):
    """Voice transcription configuration."""
    provider: Literal["whisper", "groq", "none"] = "whisper"
    api_key: str = ""  # Groq API key for Whisper
    whisper_cli: str = "~/whisper.cpp/build/bin/whisper-cli"
    whisper_model: str = "~/whisper.cpp/models/ggml-base.bin"
    language: str = "en"


class MediaConfig(BaseModel):
    """Inbound image handling."""
    optimize_images: bool = True
    max_image_edge: int = 1568
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    timeout_s: float = 30.0


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str | None = None


class Config(BaseSettings):
    """Root configuration for signalrelay."""
    model_config = SettingsConfigDict(env_prefix="SIGNALRELAY_", env_nested_delimiter="__")

    signal: SignalConfig = Field(default_factory=SignalConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)
    media: MediaConfig = Field(default_factory=MediaConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
