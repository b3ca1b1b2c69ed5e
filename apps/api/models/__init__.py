"""Models package."""

from .user import User
from .email_link_token import EmailLinkToken
