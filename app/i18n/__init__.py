# -*- coding: utf-8 -*-
"""
Notification texts.

Resolution:
- Unknown language → DEFAULT_LANGUAGE
- Key missing in requested language → English
- Key missing everywhere → the key itself (never raises)
"""

import logging

from . import en

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"

LANGUAGES = {
    "en": en.LANG,
}


def get_text(language: str, key: str, **kwargs) -> str:
    """
    Localized text for key, formatted with kwargs.

    Returns:
        Formatted string, or the key itself when it is unknown.
    """
    lang_dict = LANGUAGES.get(language, LANGUAGES[DEFAULT_LANGUAGE])
    text = lang_dict.get(key)

    if text is None:
        text = LANGUAGES["en"].get(key)
        if text is None:
            logger.error("I18N missing key in all languages: %s", key)
            return key
        logger.warning("I18N fallback to EN for key=%s, lang=%s", key, language)

    if kwargs:
        return text.format(**kwargs)
    return text


__all__ = ["get_text", "LANGUAGES", "DEFAULT_LANGUAGE"]
