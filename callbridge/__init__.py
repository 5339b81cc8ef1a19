"""Telephony voice-agent bridge: Twilio media streams ↔ realtime speech AI."""
