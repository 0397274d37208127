from .refresh_token import RefreshToken
from .upstream_credential import UpstreamCredential
from .user import User

__all__ = ["RefreshToken", "UpstreamCredential", "User"]
