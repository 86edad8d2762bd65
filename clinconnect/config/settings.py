"""
Environment-driven settings for the voice bridge.

Values are read from the process environment (optionally populated from a
``.env`` file) once, when the application is created, and handed to every
component that needs them.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import dotenv

from clinconnect.config.constants import (
    DEFAULT_CHAT_MODEL,
    DEFAULT_REALTIME_MODEL,
    DEFAULT_REALTIME_VOICE,
    DEFAULT_SESSION_STALENESS_SECONDS,
    DEFAULT_STREAM_BUFFER_FRAMES,
    DEFAULT_SUPERVISOR_MODEL,
    DEFAULT_SWEEP_INTERVAL_SECONDS,
    DEFAULT_TTS_VOICE,
)

SCENARIO_CLINICAL_TRIALS = "clinicalTrials"
SCENARIO_CHAT_SUPERVISOR = "chatSupervisor"


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from a .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        dotenv.load_dotenv(env_path)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Runtime configuration for the application."""

    openai_api_key: Optional[str] = None
    chat_model: str = DEFAULT_CHAT_MODEL
    supervisor_model: str = DEFAULT_SUPERVISOR_MODEL
    realtime_model: str = DEFAULT_REALTIME_MODEL
    realtime_voice: str = DEFAULT_REALTIME_VOICE
    tts_voice: str = DEFAULT_TTS_VOICE
    public_base_url: Optional[str] = None
    agent_scenario: str = SCENARIO_CLINICAL_TRIALS
    use_tts_audio: bool = False
    trial_data_source: str = "mock"
    session_staleness_seconds: float = DEFAULT_SESSION_STALENESS_SECONDS
    session_sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    stream_buffer_frames: int = DEFAULT_STREAM_BUFFER_FRAMES
    llm_timeout_seconds: float = 15.0
    host: str = "0.0.0.0"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        load_env_file()
        scenario = os.getenv("AGENT_SCENARIO", SCENARIO_CLINICAL_TRIALS)
        if scenario not in (SCENARIO_CLINICAL_TRIALS, SCENARIO_CHAT_SUPERVISOR):
            raise ValueError(f"Unknown AGENT_SCENARIO: {scenario}")
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            chat_model=os.getenv("OPENAI_CHAT_MODEL", DEFAULT_CHAT_MODEL),
            supervisor_model=os.getenv("OPENAI_SUPERVISOR_MODEL", DEFAULT_SUPERVISOR_MODEL),
            realtime_model=os.getenv("OPENAI_REALTIME_MODEL", DEFAULT_REALTIME_MODEL),
            realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", DEFAULT_REALTIME_VOICE),
            tts_voice=os.getenv("OPENAI_TTS_VOICE", DEFAULT_TTS_VOICE),
            public_base_url=os.getenv("PUBLIC_BASE_URL"),
            agent_scenario=scenario,
            use_tts_audio=_env_bool("USE_TTS_AUDIO", False),
            trial_data_source=os.getenv("TRIAL_DATA_SOURCE", "mock"),
            session_staleness_seconds=float(
                os.getenv("SESSION_STALENESS_SECONDS", DEFAULT_SESSION_STALENESS_SECONDS)
            ),
            session_sweep_interval_seconds=float(
                os.getenv("SESSION_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL_SECONDS)
            ),
            stream_buffer_frames=int(
                os.getenv("STREAM_BUFFER_FRAMES", DEFAULT_STREAM_BUFFER_FRAMES)
            ),
            llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "15")),
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8000")),
        )
