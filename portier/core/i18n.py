from __future__ import annotations

import contextvars
import logging
import os
from types import MappingProxyType
from typing import Any, Mapping

import polib
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from portier.core.config import settings

logger = logging.getLogger(__name__)

# Language chosen for the active request
_language_ctx: contextvars.ContextVar[str | None] = contextvars.ContextVar("_language_ctx", default=None)

# Directory where locale files live (project root "locale")
LOCALES_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "locale")

# Filled once by load_catalogs(); read-only afterwards.
_catalogs: Mapping[str, Mapping[str, str]] | None = None


def _load_catalog(language: str) -> Mapping[str, str]:
    """Read locale/<lang>/LC_MESSAGES/messages.po into a msgid -> msgstr map."""
    po_path = os.path.join(LOCALES_DIR, language, "LC_MESSAGES", "messages.po")
    if not os.path.exists(po_path):
        logger.warning("No catalog for language %s at %s; falling back to %s",
                       language, po_path, settings.DEFAULT_LANGUAGE)
        return MappingProxyType({})

    try:
        pofile = polib.pofile(po_path)
    except (OSError, ValueError):
        logger.exception("Failed to parse catalog %s", po_path)
        return MappingProxyType({})

    entries = {
        entry.msgid: entry.msgstr
        for entry in pofile
        if entry.msgstr and not entry.obsolete and "fuzzy" not in entry.flags
    }
    return MappingProxyType(entries)


def load_catalogs(languages: list[str] | None = None) -> Mapping[str, Mapping[str, str]]:
    """Load every supported catalog once; later calls return the same mapping."""
    global _catalogs
    if _catalogs is not None and languages is None:
        return _catalogs

    codes = languages or settings.supported_languages
    _catalogs = MappingProxyType({code: _load_catalog(code) for code in codes})
    logger.info("Loaded %d locale catalogs: %s", len(_catalogs), ", ".join(codes))
    return _catalogs


def normalize_language(language: str | None) -> str:
    """Map 'fr-FR', 'FR', 'sw_KE'... onto a supported code or the default."""
    if not language:
        return settings.DEFAULT_LANGUAGE
    code = language.strip().replace("_", "-").split("-")[0].lower()
    if code in settings.supported_languages:
        return code
    return settings.DEFAULT_LANGUAGE


def translate(message: str, language: str | None = None, **params: Any) -> str:
    """Translate ``message`` with fallback to the default language, then the msgid."""
    catalogs = load_catalogs()
    code = normalize_language(language or _language_ctx.get())

    text = catalogs.get(code, {}).get(message)
    if not text:
        text = catalogs.get(settings.DEFAULT_LANGUAGE, {}).get(message) or message

    if params:
        try:
            return text.format(**params)
        except (KeyError, IndexError, ValueError):
            logger.warning("Bad placeholders in translation of %r for %s", message, code)
            return message.format(**params)
    return text


def set_language_for_request(language: str | None) -> str:
    """Pin the language for the active request and return the normalized code."""
    code = normalize_language(language)
    _language_ctx.set(code)
    return code


def current_language() -> str:
    return _language_ctx.get() or settings.DEFAULT_LANGUAGE


class I18nMiddleware(BaseHTTPMiddleware):
    """Middleware that picks the language for each request.

    It checks the `lang` cookie first, then the Accept-Language header, and
    falls back to the default language. Endpoints that accept a ``language``
    field override this for the rest of the request.
    """

    async def dispatch(self, request: Request, call_next):
        language = request.cookies.get("lang")

        if not language:
            accept = request.headers.get("accept-language", "")
            if accept:
                # take the first language token
                language = accept.split(",")[0].split(";")[0].strip()

        set_language_for_request(language)
        return await call_next(request)


__all__ = [
    "I18nMiddleware",
    "current_language",
    "load_catalogs",
    "normalize_language",
    "set_language_for_request",
    "translate",
]
