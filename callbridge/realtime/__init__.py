"""Realtime speech AI client."""
