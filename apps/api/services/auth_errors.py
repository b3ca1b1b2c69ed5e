"""Authentication error taxonomy shared by the store, reconciler and orchestrator."""

from __future__ import annotations

from typing import Any, Dict


class AuthError(Exception):
    """Base error carrying a stable code and a short user-facing message."""

    code = "auth_error"
    status_code = 400
    default_message = "Authentication failed."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidIdentity(AuthError):
    code = "invalid_identity"
    default_message = "An email address is required to sign in."


class UserNotFound(AuthError):
    code = "user_not_found"
    status_code = 404
    default_message = "No account exists for this email."


class NoPasswordSet(AuthError):
    code = "no_password_set"
    default_message = "This account uses social sign-in and has no password."


class InvalidPassword(AuthError):
    code = "invalid_password"
    status_code = 401
    default_message = "Incorrect email or password."


class WeakPassword(AuthError):
    code = "weak_password"
    default_message = "Password is too short."


class DuplicateEmail(AuthError):
    code = "duplicate_email"
    status_code = 409
    default_message = "An account with this email already exists."


class EmailAlreadyRegistered(AuthError):
    code = "email_already_registered"
    default_message = "User already exists."


class UseManualSignIn(AuthError):
    code = "use_manual_sign_in"
    status_code = 409
    default_message = "Please sign in with your email and password."


class LoginFailedAfterRegistration(AuthError):
    code = "login_failed_after_registration"
    status_code = 503
    default_message = "Account created but sign-in failed. Please sign in manually."


class AuthUnavailable(AuthError):
    code = "auth_unavailable"
    status_code = 503
    default_message = "Sign-in is temporarily unavailable. Try again shortly."


class ProviderNotConfigured(AuthError):
    code = "provider_not_configured"
    default_message = "This sign-in provider is not available."


class ProviderProfileError(AuthError):
    code = "provider_profile_error"
    status_code = 401
    default_message = "Could not verify your account with the sign-in provider."


class InvalidSignInLink(AuthError):
    code = "invalid_sign_in_link"
    default_message = "Invalid or expired login link."
