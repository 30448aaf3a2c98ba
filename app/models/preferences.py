from datetime import datetime

from beanie import Document, Indexed, PydanticObjectId
from pydantic import Field


class UserPreferences(Document):
    """Per-user workflow engine endpoints. Managed elsewhere; read-only here."""
    user_id: Indexed(PydanticObjectId, unique=True)
    generation_webhook_url: str | None = None
    publish_webhook_url: str | None = None
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "user_preferences"
