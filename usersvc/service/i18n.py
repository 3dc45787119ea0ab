"""Language selection and the FR/EN message catalog.

Every envelope message passes through :func:`translate`. The resolver only
chooses text; it never changes an outcome and never raises.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional

from usersvc.logging import get_logger

logger = get_logger(__name__)

FR = "FR"
EN = "EN"

MESSAGES: dict[str, dict[str, str]] = {
    # auth gate / login
    "auth.missing_token": {FR: "Token d'accès requis", EN: "Access token required"},
    "auth.invalid_token": {FR: "Token invalide", EN: "Invalid token"},
    "auth.token_expired": {FR: "Token expiré", EN: "Token expired"},
    "auth.token_revoked": {FR: "Token révoqué", EN: "Token revoked"},
    "auth.user_not_found": {FR: "Utilisateur introuvable", EN: "User not found"},
    "auth.account_locked": {
        FR: "Compte temporairement verrouillé suite à trop de tentatives de connexion",
        EN: "Account temporarily locked due to too many login attempts",
    },
    "auth.invalid_credentials": {FR: "Identifiants invalides", EN: "Invalid credentials"},
    "auth.external_auth": {
        FR: "Ce compte utilise une authentification externe",
        EN: "This account uses external authentication",
    },
    "auth.provider_token_invalid": {
        FR: "Token du fournisseur d'identité invalide",
        EN: "Invalid identity provider token",
    },
    "auth.provider_unavailable": {
        FR: "Connexion via ce fournisseur indisponible",
        EN: "Sign-in with this provider is unavailable",
    },
    # validation
    "validation.invalid": {FR: "Données invalides", EN: "Invalid data"},
    "validation.required": {FR: "Ce champ est requis", EN: "This field is required"},
    "validation.at_least_one_field": {
        FR: "Au moins un champ doit être fourni pour la mise à jour",
        EN: "At least one field must be provided for update",
    },
    "validation.email": {FR: "Adresse email invalide", EN: "Invalid email address"},
    "validation.name": {
        FR: "Le nom doit contenir entre 2 et 100 caractères valides",
        EN: "Name must contain between 2 and 100 valid characters",
    },
    "validation.password_strength": {
        FR: "Le mot de passe doit contenir entre 6 et 128 caractères, dont une minuscule, une majuscule et un chiffre",
        EN: "Password must be 6 to 128 characters with a lowercase letter, an uppercase letter and a digit",
    },
    "validation.same_as_current": {
        FR: "Le nouveau mot de passe doit être différent de l'actuel",
        EN: "New password must be different from current password",
    },
    "validation.current_password_invalid": {
        FR: "Le mot de passe actuel est incorrect",
        EN: "Current password is incorrect",
    },
    "validation.reset_token_invalid": {
        FR: "Token de réinitialisation invalide ou expiré",
        EN: "Invalid or expired reset token",
    },
    # business outcomes
    "user.exists": {
        FR: "Un compte avec cette adresse email existe déjà",
        EN: "An account with this email address already exists",
    },
    "user.account_created": {FR: "Compte créé avec succès", EN: "Account created successfully"},
    "user.login_success": {FR: "Connexion réussie", EN: "Login successful"},
    "user.oauth_account_created": {
        FR: "Compte créé et connecté avec Google",
        EN: "Account created and signed in with Google",
    },
    "user.oauth_login_success": {FR: "Connexion Google réussie", EN: "Google sign-in successful"},
    "user.token_refreshed": {
        FR: "Token rafraîchi avec succès",
        EN: "Token refreshed successfully",
    },
    "user.logout_success": {FR: "Déconnexion réussie", EN: "Logout successful"},
    "user.profile_retrieved": {
        FR: "Profil récupéré avec succès",
        EN: "Profile retrieved successfully",
    },
    "user.profile_updated": {
        FR: "Profil mis à jour avec succès",
        EN: "Profile updated successfully",
    },
    "user.password_changed": {
        FR: "Mot de passe changé avec succès",
        EN: "Password changed successfully",
    },
    "user.account_deleted": {
        FR: "Compte utilisateur supprimé définitivement",
        EN: "User account permanently deleted",
    },
    "user.password_reset_sent": {
        FR: "Si un compte existe pour cette adresse, un email de réinitialisation a été envoyé",
        EN: "If an account exists for this address, a password reset email has been sent",
    },
    "user.password_reset_completed": {
        FR: "Mot de passe réinitialisé avec succès",
        EN: "Password reset successfully",
    },
    # infrastructure
    "rate_limit.exceeded": {
        FR: "Trop de requêtes. Veuillez patienter {retry_after} secondes avant de réessayer",
        EN: "Too many requests. Please wait {retry_after} seconds before trying again",
    },
    "http.not_found": {FR: "Ressource introuvable", EN: "Resource not found"},
    "http.method_not_allowed": {FR: "Méthode non autorisée", EN: "Method not allowed"},
    "http.error": {FR: "Requête invalide", EN: "Bad request"},
    "system.unavailable": {
        FR: "Service temporairement indisponible",
        EN: "Service temporarily unavailable",
    },
    "system.internal_error": {FR: "Erreur interne du serveur", EN: "Internal server error"},
    "system.healthy": {FR: "Service opérationnel", EN: "Service healthy"},
}


def translate(key: str, language: str, **params: Any) -> str:
    """Render ``key`` in ``language``; unknown keys fall back to the key itself."""
    entry = MESSAGES.get(key)
    if entry is None:
        logger.warning("translation_missing", key=key, language=language)
        return key
    template = entry.get(language) or entry.get(FR) or key
    if not params:
        return template
    try:
        return template.format(**params)
    except (KeyError, IndexError, ValueError):
        return template


def _match_language(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    primary = value.strip().split("-")[0].split("_")[0].lower()
    if primary == "fr":
        return FR
    if primary == "en":
        return EN
    return None


def _parse_accept_language(header: str) -> list[tuple[str, float]]:
    """Split an Accept-Language header into ``(tag, q)`` sorted by preference."""
    entries: list[tuple[str, float, int]] = []
    for position, part in enumerate(header.split(",")):
        pieces = [piece.strip() for piece in part.split(";")]
        tag = pieces[0]
        if not tag:
            continue
        quality = 1.0
        for param in pieces[1:]:
            if param.lower().startswith("q="):
                try:
                    quality = float(param[2:])
                except ValueError:
                    # unparseable weights count as full preference
                    quality = 1.0
        if quality <= 0:
            continue
        entries.append((tag, quality, position))
    entries.sort(key=lambda item: (-item[1], item[2]))
    return [(tag, quality) for tag, quality, _ in entries]


class LanguageResolver:
    """Pick FR or EN from request signals.

    Priority: ``?lang=`` query, ``X-Language`` header, then the highest-ranked
    French or English tag in ``Accept-Language``. Anything else yields the
    configured default.
    """

    def __init__(self, default: str = FR) -> None:
        self.default = default if default in (FR, EN) else FR

    def resolve(
        self,
        *,
        query_lang: Optional[str] = None,
        header_lang: Optional[str] = None,
        accept_language: Optional[str] = None,
    ) -> str:
        try:
            for explicit in (query_lang, header_lang):
                matched = _match_language(explicit)
                if matched:
                    return matched
            if accept_language:
                for tag, _ in _parse_accept_language(accept_language):
                    matched = _match_language(tag)
                    if matched:
                        return matched
        except Exception as exc:  # resolution must never fail a request
            logger.warning("language_resolution_failed", error=str(exc))
        return self.default

    def resolve_request(self, request: Any) -> str:
        """Resolve from a Starlette request (anything with headers/query_params)."""
        try:
            query: Mapping[str, str] = getattr(request, "query_params", {}) or {}
            headers: Mapping[str, str] = getattr(request, "headers", {}) or {}
            return self.resolve(
                query_lang=query.get("lang"),
                header_lang=headers.get("x-language"),
                accept_language=headers.get("accept-language"),
            )
        except Exception as exc:
            logger.warning("language_resolution_failed", error=str(exc))
            return self.default
