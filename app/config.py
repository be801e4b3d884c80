"""Application configuration loaded from environment variables and .env."""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_ENV = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


class AudioSettings(BaseSettings):
    """Downstream audio handling."""

    model_config = SettingsConfigDict(**_ENV, env_prefix="AUDIO_")

    # Rate of PCM16 frames sent by browser clients (48000 when the worklet
    # does not downsample itself)
    browser_capture_rate: int = Field(default=24000)

    # "linear" (reference behaviour) or a soxr quality: LQ, MQ, HQ, VHQ
    resampler_quality: str = Field(default="linear")

    frame_ms: int = Field(default=20)


class AiSettings(BaseSettings):
    """Realtime AI endpoint."""

    model_config = _ENV

    openai_api_key: Optional[str] = Field(default=None)
    openai_model: str = Field(default="gpt-realtime")
    openai_url: str = Field(default="wss://api.openai.com/v1/realtime")
    openai_voice: str = Field(default="alloy")
    connect_timeout: float = Field(default=10.0, description="Seconds to wait for the upstream socket")

    # Agent persona YAML (instructions, greeting, per-context overrides)
    agent_prompt_file: Optional[str] = Field(default=None)

    # Mock upstream instead of the real endpoint
    test_mode: bool = Field(default=False)
    mock_response_frames: int = Field(default=50)


class TurnSettings(BaseSettings):
    """Turn-taking and barge-in."""

    model_config = _ENV

    turn_policy: Literal["upstream_vad", "local_energy"] = Field(default="upstream_vad")

    # Passed through to the endpoint under upstream_vad
    vad_type: Literal["server_vad", "semantic_vad"] = Field(default="server_vad")
    vad_threshold: float = Field(default=0.5)
    vad_silence_ms: int = Field(default=700)
    vad_prefix_ms: int = Field(default=300)
    vad_eagerness: Literal["low", "medium", "high", "auto"] = Field(default="medium")

    # Local energy detection under local_energy
    energy_threshold: float = Field(default=500.0, description="RMS above which a frame is speech")
    silence_frames: int = Field(default=55, description="Consecutive silent frames ending a turn")
    interrupt_cooldown_ms: int = Field(default=2000)
    drop_audio_during_cooldown: bool = Field(default=False)

    barge_in_enabled: bool = Field(default=True)
    barge_in_min_frames: int = Field(default=1)


class ServerSettings(BaseSettings):
    """HTTP / WebSocket server."""

    model_config = _ENV

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)

    # When set, WebSockets need ?token=<api_key> and HTTP needs a bearer key
    api_key: Optional[str] = Field(default=None)

    server_public_url: Optional[str] = Field(default=None)
    twilio_ws_url: Optional[str] = Field(default=None)

    rate_limit_requests: int = Field(default=60)
    rate_limit_window_s: float = Field(default=60.0)
    rate_limit_sweep_s: float = Field(default=300.0)


class SystemSettings(BaseSettings):
    """Logging."""

    model_config = _ENV

    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")
    log_dir: Optional[str] = Field(default=None, description="Also write log files here")


class Config:
    """All configuration groups."""

    def __init__(self) -> None:
        self.audio = AudioSettings()
        self.ai = AiSettings()
        self.turn = TurnSettings()
        self.server = ServerSettings()
        self.system = SystemSettings()


config = Config()
