from pydantic import BaseModel, Field


class KeyCreateRequest(BaseModel):
    email: str | None = Field(default=None, max_length=320)


class KeyCreated(BaseModel):
    id: str
    key: str
