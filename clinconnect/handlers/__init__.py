"""
Handlers for Twilio voice traffic.

Key components:
- turn_handler: Runs one conversational turn for a call: history, the active
  agent's reasoning pass, tool calls, handoffs and the apology fallback.
- webhook_handlers: Turn-based and streaming voice webhooks, call-status
  callbacks and the TwiML documents sent back to Twilio.

Usage examples:
```python
from clinconnect.handlers.turn_handler import TurnHandler
from clinconnect.handlers.webhook_handlers import handle_voice_turn

twiml = await handle_voice_turn(
    "CA123", "I have diabetes", registry, TurnHandler(llm), action_url
)
```
"""

# Handlers module initialization
