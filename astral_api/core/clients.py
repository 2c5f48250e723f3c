from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass(frozen=True)
class OAuthApp:
    client_id: str
    name: str
    redirect_uri: str
    scopes: List[str] = field(default_factory=list)

    @property
    def default_scope(self) -> str:
        return " ".join(self.scopes)


# Registered applications allowed to run the authorization-code flow.
OAUTH_APPS: Dict[str, OAuthApp] = {
    "astral-launcher": OAuthApp(
        client_id="astral-launcher",
        name="ASTRAL-AI Launcher",
        redirect_uri="astral-ai://callback",
        scopes=["profile", "launcher"],
    ),
}


def get_client(client_id: str | None) -> Optional[OAuthApp]:
    if not client_id:
        return None
    return OAUTH_APPS.get(client_id)
