from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class User(Document):
    username: Indexed(str, unique=True)
    email: str
    role: str = "user"  # "user" | "admin"
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
