from typing import Optional
from pydantic import BaseModel, ConfigDict


class UserProfile(BaseModel):
    """Vue en lecture seule d'un utilisateur ; le compte appartient au fournisseur d'identité."""
    model_config = ConfigDict(extra="ignore")

    uid:          str
    username:     str = ""
    display_name: Optional[str] = None
    email:        Optional[str] = None
    phone:        Optional[str] = None      # E.164
    is_active:    bool = True

    @property
    def name(self) -> str:
        return self.display_name or self.username or self.uid
