"""Text-to-speech for the turn-based webhook."""

import logging
from typing import Optional

from openai import AsyncOpenAI, OpenAIError

from clinconnect.config.constants import DEFAULT_TTS_MODEL, DEFAULT_TTS_VOICE, LOGGER_NAME
from clinconnect.services.audio_cache import AudioCache

logger = logging.getLogger(LOGGER_NAME)


class SpeechSynthesisError(RuntimeError):
    """Raised when speech could not be generated."""


class SpeechService:
    """Synthesises utterances with OpenAI TTS and keeps them in an AudioCache."""

    def __init__(
        self,
        client: Optional[AsyncOpenAI],
        cache: AudioCache,
        voice: str = DEFAULT_TTS_VOICE,
        model: str = DEFAULT_TTS_MODEL,
    ):
        self.client = client
        self.cache = cache
        self.voice = voice
        self.model = model

    async def synthesize(self, text: str) -> str:
        """
        Make sure audio for ``text`` is cached and return its id.

        Raises:
            SpeechSynthesisError: no client is configured or the TTS call failed
        """
        cached = self.cache.lookup(text, self.voice)
        if cached:
            return cached

        if self.client is None:
            raise SpeechSynthesisError("No OpenAI client configured for TTS")

        try:
            response = await self.client.audio.speech.create(
                model=self.model,
                voice=self.voice,
                input=text,
                response_format="mp3",
            )
        except OpenAIError as e:
            raise SpeechSynthesisError(f"TTS synthesis failed: {e}") from e

        audio_id = self.cache.put(text, self.voice, response.content)
        logger.info(f"Synthesised {len(response.content)} bytes of speech ({audio_id[:12]})")
        return audio_id
