"""
Constants and configuration values used throughout the application.

This module defines constants that are used across different parts of the application,
providing a centralized location for configuration values and making it easier to
maintain consistent naming throughout the codebase.
"""

# Logger name used throughout the application
LOGGER_NAME = "clinconnect"

# Default OpenAI models
DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_SUPERVISOR_MODEL = "gpt-4.1"
DEFAULT_REALTIME_MODEL = "gpt-4o-realtime-preview-2025-06-03"
DEFAULT_REALTIME_VOICE = "shimmer"
DEFAULT_TTS_MODEL = "tts-1"
DEFAULT_TTS_VOICE = "alloy"

# Twilio <Say> voice used in turn-based mode
TWILIO_SAY_VOICE = "Polly.Joanna"

# Audio format constants
TWILIO_SAMPLE_RATE = 8000
REALTIME_SAMPLE_RATE = 24000
TWILIO_MEDIA_ENCODING = "audio/x-mulaw"

# Twilio Media Streams event names
EVENT_CONNECTED = "connected"
EVENT_START = "start"
EVENT_MEDIA = "media"
EVENT_MARK = "mark"
EVENT_STOP = "stop"
EVENT_CLEAR = "clear"

# Mark names sent to Twilio
MARK_GREETING_READY = "greeting_ready"
MARK_ERROR_OCCURRED = "error_occurred"

# HTTP / WebSocket paths
AUDIO_STREAM_PATH = "/api/twilio/audio-stream"
VOICE_WEBHOOK_PATH = "/api/twilio/voice-webhook"
VOICE_WEBHOOK_STREAM_PATH = "/api/twilio/voice-webhook-stream"
CALL_STATUS_PATH = "/api/twilio/call-status"
AUDIO_PATH_PREFIX = "/api/twilio/audio"

# Call statuses after which a call session is discarded
TERMINAL_CALL_STATUSES = frozenset(
    {"completed", "failed", "busy", "no-answer", "canceled", "stream-stopped"}
)

# Session registry housekeeping
DEFAULT_SESSION_STALENESS_SECONDS = 60 * 60
DEFAULT_SWEEP_INTERVAL_SECONDS = 10 * 60

# Turn handling
HISTORY_WINDOW_TURNS = 10
APOLOGY_UTTERANCE = (
    "I'm sorry, I'm having trouble processing that right now. Could you try again?"
)
NO_SPEECH_UTTERANCE = "I didn't catch that. Could you say it again?"

# Streaming bridge
DEFAULT_STREAM_BUFFER_FRAMES = 200

# Generated speech cache
DEFAULT_AUDIO_CACHE_SIZE = 128

# Conversation history roles
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
