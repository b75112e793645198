from typing import Optional

from pydantic import BaseModel, Field


class TokenResponse(BaseModel):
    # Only access_token is used; the rest is accepted and dropped.
    access_token: str = Field(min_length=1)
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None


class DeepLinkAction(BaseModel):
    url: str = "/"
    role_name: str = "Owner"
    verified: int = 1
    role_id: int = 0


class DeepLinkRequest(BaseModel):
    # The API expects the action object serialized as a JSON *string*.
    action: str

    @classmethod
    def for_action(cls, action: DeepLinkAction) -> "DeepLinkRequest":
        return cls(action=action.model_dump_json())


class DeepLinkResponse(BaseModel):
    deeplink: str = Field(min_length=1)
