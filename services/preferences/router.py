"""
services/preferences/router.py
Display preferences and cookie consent, kept in the signed session cookie.
Each request builds its own services over request.session; nothing is global.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from config.settings import settings
from shared.schemas.schemas import (
    ConsentStatusResponse,
    CookiePreferences,
    MessageResponse,
    PreferencesResponse,
    PreferencesUpdateRequest,
)
from shared.utils.preferences import (
    EXCHANGE_RATES,
    ConsentService,
    MappingStorage,
    PreferencesService,
    TrackerRegistry,
)

router = APIRouter(prefix="/api", tags=["Preferences"])


# ── Dependencies ──────────────────────────────────────────────

def get_preferences_service(
    request: Request,
    accept_language: Optional[str] = Header(None),
) -> PreferencesService:
    return PreferencesService(MappingStorage(request.session), accept_language)


def get_consent_service(request: Request) -> ConsentService:
    service = ConsentService(
        MappingStorage(request.session),
        TrackerRegistry(ga_measurement_id=settings.GA_MEASUREMENT_ID),
    )
    service.sync_trackers()
    return service


def _preferences_response(service: PreferencesService) -> PreferencesResponse:
    prefs = service.load()
    return PreferencesResponse(
        language=prefs.language,
        currency=prefs.currency,
        currency_symbol=service.currency_symbol,
        exchange_rate=float(EXCHANGE_RATES[prefs.currency]),
    )


def _consent_response(service: ConsentService) -> ConsentStatusResponse:
    record = service.get_consent()
    return ConsentStatusResponse(
        has_consented=record is not None,
        show_banner=record is None,
        consent=record,
        scripts=service.trackers.active_scripts,
    )


# ── Preferences ───────────────────────────────────────────────

@router.get("/preferences", response_model=PreferencesResponse)
async def get_preferences(service: PreferencesService = Depends(get_preferences_service)):
    """Stored preferences, or defaults detected from Accept-Language."""
    return _preferences_response(service)


@router.put("/preferences", response_model=PreferencesResponse)
async def update_preferences(
    data: PreferencesUpdateRequest,
    service: PreferencesService = Depends(get_preferences_service),
):
    service.update(language=data.language, currency=data.currency)
    return _preferences_response(service)


# ── Consent ───────────────────────────────────────────────────

@router.get("/consent", response_model=ConsentStatusResponse)
async def get_consent(service: ConsentService = Depends(get_consent_service)):
    return _consent_response(service)


@router.put("/consent", response_model=ConsentStatusResponse)
async def set_consent(
    data: CookiePreferences,
    service: ConsentService = Depends(get_consent_service),
):
    """Record category choices. essential cannot be switched off."""
    service.set_consent(data)
    return _consent_response(service)


@router.post("/consent/accept-all", response_model=ConsentStatusResponse)
async def accept_all(service: ConsentService = Depends(get_consent_service)):
    service.accept_all()
    return _consent_response(service)


@router.post("/consent/reject-all", response_model=ConsentStatusResponse)
async def reject_all(service: ConsentService = Depends(get_consent_service)):
    service.reject_all()
    return _consent_response(service)


@router.delete("/consent", response_model=MessageResponse)
async def clear_consent(service: ConsentService = Depends(get_consent_service)):
    """Forget the consent record so the banner shows again."""
    service.clear_consent()
    service.sync_trackers()
    return MessageResponse(message="Consent cleared")
