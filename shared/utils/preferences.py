"""
shared/utils/preferences.py
Display preferences (language, currency) and cookie consent.

Both services are built around an injectable PreferenceStorage so the same
code runs against the signed session cookie in the API and against an
in-memory dict in tests. Storage failures only affect cosmetics: they are
logged and the service falls back to defaults.
"""

import logging
import time
from decimal import Decimal
from typing import Dict, List, MutableMapping, Optional, Protocol, get_args

from pydantic import ValidationError

from shared.schemas.schemas import (
    ConsentRecord,
    CookiePreferences,
    Currency,
    Language,
    UserPreferences,
)
from shared.utils.pricing import CURRENCY_SYMBOLS, format_price, round_half_up

logger = logging.getLogger(__name__)

PREFERENCES_KEY = "user_preferences"
CONSENT_KEY = "rtg_cookie_consent"
CONSENT_VERSION = "1.0"

SUPPORTED_LANGUAGES = get_args(Language)
SUPPORTED_CURRENCIES = get_args(Currency)
DEFAULT_LANGUAGE = "en"
DEFAULT_CURRENCY = "USD"

LANGUAGE_NAMES = {
    "en": "English",
    "es": "Español",
    "fr": "Français",
    "de": "Deutsch",
    "pt": "Português",
}

# Illustrative display rates, not market data
EXCHANGE_RATES: Dict[str, Decimal] = {
    "USD": Decimal("1.0"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "AUD": Decimal("1.52"),
}


# ── Storage ───────────────────────────────────────────────────

class PreferenceStorage(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MappingStorage:
    """
    Storage over any mutable mapping. Pass request.session to persist in the
    signed session cookie; pass nothing for a private in-memory dict.
    """

    def __init__(self, mapping: Optional[MutableMapping[str, str]] = None):
        self._data = mapping if mapping is not None else {}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


def detect_language(accept_language: Optional[str]) -> str:
    """
    Pick the best supported language from an Accept-Language header.
    "fr-CA,fr;q=0.9,en;q=0.8" → "fr". Unsupported or missing → "en".
    """
    if not accept_language:
        return DEFAULT_LANGUAGE

    ranked = []
    for position, part in enumerate(accept_language.split(",")):
        pieces = part.strip().split(";")
        tag = pieces[0].strip().lower()
        if not tag or tag == "*":
            continue
        quality = 1.0
        for param in pieces[1:]:
            name, _, value = param.strip().partition("=")
            if name == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        ranked.append((-quality, position, tag.split("-")[0]))

    for _, _, primary in sorted(ranked):
        if primary in SUPPORTED_LANGUAGES:
            return primary
    return DEFAULT_LANGUAGE


# ── Preferences ───────────────────────────────────────────────

class PreferencesService:
    """
    Language/currency preference with explicit load and write-through save.

        prefs = PreferencesService(MappingStorage(request.session), "de-DE")
        prefs.set_currency("EUR")
        prefs.format_price(100)   # "€92"
    """

    def __init__(self, storage: PreferenceStorage, accept_language: Optional[str] = None):
        self.storage = storage
        self.accept_language = accept_language
        self._current: Optional[UserPreferences] = None

    def load(self) -> UserPreferences:
        """Read persisted preferences once; detect defaults when absent or unreadable."""
        if self._current is not None:
            return self._current

        defaults = UserPreferences(
            language=detect_language(self.accept_language),
            currency=DEFAULT_CURRENCY,
        )
        try:
            raw = self.storage.get(PREFERENCES_KEY)
        except Exception as e:
            logger.warning(f"Failed to read preferences: {e}")
            raw = None

        if raw:
            try:
                self._current = UserPreferences.model_validate_json(raw)
            except ValidationError as e:
                logger.warning(f"Ignoring malformed stored preferences: {e.error_count()} errors")
                self._current = defaults
        else:
            self._current = defaults
        return self._current

    @property
    def language(self) -> str:
        return self.load().language

    @property
    def currency(self) -> str:
        return self.load().currency

    def set_language(self, language: str) -> UserPreferences:
        if language not in SUPPORTED_LANGUAGES:
            raise ValueError(f"Unsupported language: {language}")
        return self._save(self.load().model_copy(update={"language": language}))

    def set_currency(self, currency: str) -> UserPreferences:
        if currency not in SUPPORTED_CURRENCIES:
            raise ValueError(f"Unsupported currency: {currency}")
        return self._save(self.load().model_copy(update={"currency": currency}))

    def update(
        self, language: Optional[str] = None, currency: Optional[str] = None
    ) -> UserPreferences:
        if language is not None:
            self.set_language(language)
        if currency is not None:
            self.set_currency(currency)
        return self.load()

    def convert(self, amount_usd) -> Decimal:
        rate = EXCHANGE_RATES[self.currency]
        return round_half_up(Decimal(str(amount_usd)) * rate)

    def format_price(self, amount_usd) -> str:
        """USD amount in the preferred currency, rounded to whole units."""
        return format_price(self.convert(amount_usd), self.currency)

    @property
    def currency_symbol(self) -> str:
        return CURRENCY_SYMBOLS[self.currency]

    def _save(self, prefs: UserPreferences) -> UserPreferences:
        # In-memory state changes even if persisting fails
        self._current = prefs
        try:
            self.storage.set(PREFERENCES_KEY, prefs.model_dump_json())
        except Exception as e:
            logger.warning(f"Failed to save preferences: {e}")
        return prefs


# ── Trackers ──────────────────────────────────────────────────

class TrackerRegistry:
    """
    Third-party scripts gated by consent. install/remove are idempotent:
    installing twice leaves one script, removing an absent one is a no-op.
    """

    def __init__(self, ga_measurement_id: str = "", marketing_scripts: Optional[List[str]] = None):
        self.ga_measurement_id = ga_measurement_id
        self.marketing_scripts = list(marketing_scripts or [])
        self.installed: Dict[str, List[str]] = {}

    def scripts_for(self, category: str) -> List[str]:
        if category == "analytics":
            if not self.ga_measurement_id:
                return []
            return [f"https://www.googletagmanager.com/gtag/js?id={self.ga_measurement_id}"]
        if category == "marketing":
            return self.marketing_scripts
        return []

    def install(self, category: str) -> None:
        if category in self.installed:
            return
        self.installed[category] = self.scripts_for(category)
        logger.debug(f"Installed {category} trackers")

    def remove(self, category: str) -> None:
        if self.installed.pop(category, None) is not None:
            logger.debug(f"Removed {category} trackers")

    def is_installed(self, category: str) -> bool:
        return category in self.installed

    def apply(self, prefs: CookiePreferences) -> None:
        for category in ("analytics", "marketing"):
            if getattr(prefs, category):
                self.install(category)
            else:
                self.remove(category)

    @property
    def active_scripts(self) -> List[str]:
        return [src for scripts in self.installed.values() for src in scripts]


# ── Consent ───────────────────────────────────────────────────

class ConsentService:
    """Versioned cookie consent record. essential is always on."""

    def __init__(self, storage: PreferenceStorage, trackers: Optional[TrackerRegistry] = None):
        self.storage = storage
        self.trackers = trackers or TrackerRegistry()

    def has_consented(self) -> bool:
        return self.get_consent() is not None

    def get_consent(self) -> Optional[ConsentRecord]:
        try:
            raw = self.storage.get(CONSENT_KEY)
        except Exception as e:
            logger.warning(f"Failed to read consent: {e}")
            return None
        if not raw:
            return None
        try:
            return ConsentRecord.model_validate_json(raw)
        except ValidationError:
            logger.warning("Ignoring malformed consent record")
            return None

    def set_consent(self, preferences) -> ConsentRecord:
        """
        Record consent and apply tracker side effects immediately.
        Accepts a CookiePreferences or a plain dict; essential is forced True.
        """
        if isinstance(preferences, CookiePreferences):
            preferences = preferences.model_dump()
        prefs = CookiePreferences.model_validate({**preferences, "essential": True})

        record = ConsentRecord(
            version=CONSENT_VERSION,
            timestamp=int(time.time() * 1000),
            preferences=prefs,
        )
        try:
            self.storage.set(CONSENT_KEY, record.model_dump_json())
        except Exception as e:
            logger.warning(f"Failed to save cookie preferences: {e}")

        self.trackers.apply(prefs)
        return record

    def accept_all(self) -> ConsentRecord:
        return self.set_consent(
            {"essential": True, "analytics": True, "marketing": True, "preferences": True}
        )

    def reject_all(self) -> ConsentRecord:
        return self.set_consent(CookiePreferences())

    def clear_consent(self) -> None:
        try:
            self.storage.remove(CONSENT_KEY)
        except Exception as e:
            logger.warning(f"Failed to clear consent: {e}")

    def should_show_banner(self) -> bool:
        return not self.has_consented()

    def sync_trackers(self) -> None:
        """Re-apply stored consent, e.g. at the start of a request."""
        record = self.get_consent()
        self.trackers.apply(record.preferences if record else CookiePreferences())
