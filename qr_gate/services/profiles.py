import secrets
from typing import Optional

from ..models import Profile


def generate_qr_secret() -> str:
    return secrets.token_hex(32)


class ProfileSecretProvider:
    """Looks up the per-user QR signing secret stored on the profile."""

    def __init__(self, session):
        self.session = session

    def get(self, user_id: str) -> Optional[str]:
        profile = self.session.get(Profile, user_id)
        if profile is None or not profile.qr_secret:
            return None
        return profile.qr_secret

    def exists(self, user_id: str) -> bool:
        return self.session.get(Profile, user_id) is not None
