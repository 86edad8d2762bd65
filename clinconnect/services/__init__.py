"""
Services module for external API integrations in the voice bridge.

Key components:
- llm_client: Chat-completions wrapper with function tools; every failure
  surfaces as LLMError.
- clinical_trials: Trial data sources: built-in mock data and a cached
  ClinicalTrials.gov v2 client that falls back to it.
- speech: OpenAI text-to-speech for the turn-based <Play> mode.
- audio_cache: Bounded LRU cache holding generated speech until Twilio fetches it.

Usage examples:
```python
from clinconnect.services.clinical_trials import create_trial_data_source

trials = create_trial_data_source("mock")
result = await trials.search(condition="diabetes", location="Chicago")
print([t.title for t in result.trials])
```
"""

# Services module initialization
