"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("callbridge.config")


class Settings(BaseSettings):
    # Realtime AI
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-realtime"
    openai_realtime_url: str = "wss://api.openai.com/v1/realtime"
    realtime_voice: str = "alloy"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_phone_number: str = ""
    twilio_from_number: str = ""
    public_base_url: str = ""

    # Ring the owner first, then hand the call to the AI
    enable_ring_then_ai: bool = False
    owner_forward_number: str = ""
    ring_timeout_seconds: int = 20

    # Post-call SMS to the business owner
    owner_notify_number: str = ""

    # Google Calendar
    google_client_id: str = ""
    google_client_secret: str = ""
    google_refresh_token: str = ""
    google_service_account_json: str = ""
    google_calendar_id: str = "primary"
    calendar_timezone: str = "America/Phoenix"

    # Booking policy
    appt_duration_minutes: int = 30
    appt_buffer_minutes: int = 10
    business_start_hour: int = 9
    business_end_hour: int = 17
    booking_dry_run: bool = False

    # Storage (empty → in-memory store)
    database_url: str = ""

    # Outbound coaching calls
    scheduler_enabled: bool = True

    # Admin auth
    coach_admin_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @property
    def sms_from_number(self) -> str:
        return self.twilio_from_number or self.twilio_phone_number

    @property
    def twilio_configured(self) -> bool:
        return bool(
            self.twilio_account_sid
            and self.twilio_auth_token
            and self.public_base_url
            and self.sms_from_number
        )

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"sk-...", "AC...", "path/to/service-account.json"}

        if not self.openai_api_key or self.openai_api_key in _placeholders:
            warnings.append(
                "OPENAI_API_KEY is missing — incoming calls will hear an "
                "'unavailable' message."
            )

        if not 0 <= self.business_start_hour < self.business_end_hour <= 24:
            raise ValueError(
                "BUSINESS_START_HOUR must be before BUSINESS_END_HOUR "
                f"(got {self.business_start_hour}..{self.business_end_hour})."
            )

        if self.twilio_account_sid in _placeholders:
            warnings.append("TWILIO_ACCOUNT_SID is a placeholder — Twilio calls won't work.")

        if not self.twilio_configured:
            warnings.append(
                "Twilio is not fully configured — post-call SMS and outbound "
                "coaching calls are disabled."
            )

        if not (self.google_refresh_token or self.google_service_account_json):
            warnings.append(
                "No Google Calendar credentials — booking tools will report "
                "booking_not_configured."
            )

        if not self.coach_admin_key:
            if self.debug:
                warnings.append("COACH_ADMIN_KEY not set. Admin APIs are open (DEBUG=true).")
            else:
                warnings.append(
                    "COACH_ADMIN_KEY not set. Admin APIs are locked in production."
                )

        if self.booking_dry_run:
            warnings.append("BOOKING_DRY_RUN enabled — no calendar events will be created.")

        return warnings


settings = Settings()
