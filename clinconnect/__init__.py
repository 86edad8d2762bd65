"""
ClinConnect - Twilio phone calls bridged to OpenAI agents

This application answers phone calls placed through Twilio and lets callers talk
to AI agents that help them find and enrol in clinical trials, or to a junior
chat agent backed by a supervisor model.

Two calling modes are supported:
- Turn-based: Twilio transcribes each caller utterance and posts it to a voice
  webhook; the reply is spoken back with TwiML <Say> or <Play>.
- Streaming: Twilio Media Streams sends 8 kHz μ-law audio over a WebSocket,
  which is bridged full-duplex to an OpenAI Realtime session.

Key Components:
- agents: Agent configurations, tools, the catalogue and the supervisor protocol
- audio: G.711 μ-law codec and resampling buffers
- bot: OpenAI Realtime client and the Twilio <-> Realtime bridge
- config: Constants, environment settings and logging setup
- handlers: The conversational turn handler and the Twilio webhooks
- models: Stream frame schemas and the call session registry
- services: Chat completions, clinical-trial data, TTS and the audio cache
- websocket_manager: Receive loop for media stream sockets

Getting Started:
1. Set up environment variables:
   - OPENAI_API_KEY: Your OpenAI API key
   - PUBLIC_BASE_URL: Public https URL Twilio can reach (e.g. an ngrok tunnel)
   - AGENT_SCENARIO: clinicalTrials (default) or chatSupervisor
   - PORT / HOST / LOG_LEVEL

2. Start the server:
   ```bash
   python run.py
   ```

3. Point the Twilio number's voice webhook at
   https://your-host/api/twilio/voice-webhook (turn-based) or
   https://your-host/api/twilio/voice-webhook-stream (streaming), and its
   status callback at https://your-host/api/twilio/call-status.
"""
