"""
Configuration module for the ClinConnect voice bridge.

This module provides centralized configuration management for the entire application,
including constants, logging setup, and environment-based settings.

Key components:
- constants: Defines application-wide constants used across modules, including
  Twilio Media Streams event names, audio formats, paths and default model settings.
- logging_config: Provides a consistent logging infrastructure with support for
  console and file-based logging with rotation capabilities.
- settings: Reads environment variables (and an optional .env file) into a
  Settings object that is handed to the components that need it.

Usage examples:
```python
from clinconnect.config.constants import LOGGER_NAME, EVENT_MEDIA
from clinconnect.config.logging_config import configure_logging
from clinconnect.config.settings import Settings

logger = configure_logging()
settings = Settings.from_env()
logger.info(f"Scenario: {settings.agent_scenario}")
```
"""
