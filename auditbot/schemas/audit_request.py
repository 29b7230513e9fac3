from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AuditRequestCreate(BaseModel):
    """Audit request submitted from the web portal."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    project_name: str = Field(alias="projectName", min_length=1, max_length=100)
    blockchain: str = Field(min_length=1, max_length=300)
    symbol: Optional[str] = Field(default=None, max_length=300)
    contract_address: Optional[str] = Field(default=None, alias="contractAddress", max_length=300)
    website: Optional[str] = Field(default=None, max_length=300)
    telegram: Optional[str] = Field(default=None, max_length=300)
    twitter: Optional[str] = Field(default=None, max_length=300)
    email: Optional[str] = Field(default=None, max_length=300)
    description: Optional[str] = Field(default=None, max_length=2000)
    user_telegram_id: Optional[int] = Field(default=None, alias="userTelegramId")
    user_telegram_username: Optional[str] = Field(default=None, alias="userTelegramUsername", max_length=64)

    def to_info(self) -> dict[str, str]:
        """Map onto the collectedInfo keys used by the chat flow."""
        socials = ", ".join(s for s in (self.telegram, self.twitter) if s)
        info = {
            "projectName": self.project_name,
            "symbol": self.symbol,
            "blockchain": self.blockchain,
            "contract": self.contract_address,
            "website": self.website,
            "socials": socials,
            "email": self.email,
            "description": self.description,
        }
        return {key: value for key, value in info.items() if value}


class AuditRequestResponse(BaseModel):
    success: bool
    message: str
    data: dict[str, Any]


class TelegramLinkResponse(BaseModel):
    success: bool
    telegramLink: str
    payload: dict[str, Any]


class BotInfoResponse(BaseModel):
    success: bool
    bot: dict[str, Any]
