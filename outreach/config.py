from __future__ import annotations
import math
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="OUTREACH_", env_file=".env", extra="ignore")

    # Core
    instance_id: str = Field(default="outreach-1", description="Instance id for log correlation.")
    data_dir: str = Field(default="./data")
    sqlite_path: str = Field(default="./data/outreach.sqlite")

    # Network
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8788)
    ws_path: str = Field(default="/ws")
    webhook_path: str = Field(default="/webhooks/gateway")
    metrics_path: str = Field(default="/metrics")
    health_path: str = Field(default="/healthz")

    # Remote messaging gateway
    gateway_host: str = Field(default="http://127.0.0.1:1234", description="Base URL of the messaging gateway.")
    gateway_password: str = Field(default="", description="Shared secret sent with every gateway call.")
    gateway_method: str = Field(default="private-api")
    primary_service: str = Field(default="iMessage", description="Transport tag for new chat ids.")
    secondary_service: str = Field(default="SMS", description="Transport tag used by attachment fallback.")
    connect_timeout_s: float = Field(default=5.0)
    text_timeout_s: float = Field(default=15.0, description="Budget for text, reply and reaction calls.")
    attachment_timeout_s: float = Field(default=45.0, description="Budget for attachment calls.")
    fallback_settle_s: float = Field(default=2.0, description="Wait after secondary chat creation.")
    max_attachment_bytes: int = Field(default=int(7.5 * 1024 * 1024))

    # Broadcast pacing
    batch_size: int = Field(default=5)
    messages_per_minute: int = Field(default=10, description="Target max throughput inside a batch.")
    batch_pause_s: float = Field(default=30.0)
    intro_gap_s: float = Field(default=1.5, description="Gap between intro text and contact card.")

    # Organization texts
    organization_name: str = Field(default="our organization")
    opt_out_confirmation: str = Field(
        default="You've been unsubscribed from {org} messages. You won't receive any more messages from us.\n\n"
                "To opt back in at any time, just reply with START or YES."
    )
    opt_in_confirmation: str = Field(
        default="Welcome back! You've been re-subscribed to {org} messages.\n\n"
                "To unsubscribe again, reply STOP anytime."
    )
    intro_message: str = Field(
        default="Hi! Thanks for connecting with {org}.\n\n"
                "Tap the contact card below to save our info.\n\n"
                "Reply STOP to opt out of future messages."
    )
    contact_card_path: str = Field(default="./data/contact.vcf")

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

    @property
    def min_interval_s(self) -> float:
        """Floor between two sends of the same batch, in seconds."""
        return math.ceil(60000 / self.messages_per_minute) / 1000

def load_settings() -> Settings:
    return Settings()
