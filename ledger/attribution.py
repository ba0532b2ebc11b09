"""Referral attribution.

A conversion is credited to a referrer only when the referral code belongs
to the converting member's creator, the originating click (for click-based
attribution) happened inside the attribution window, and the converting
identity is not the referrer's own. Anything else is organic, never an
error.
"""

import hashlib
import re
import secrets
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from .calculator import MEMBER_RATE
from .errors import AttributionAmbiguous
from .logging_config import get_logger
from .models import AttributionClick, Member, utcnow
from .settings import Settings, settings as default_settings
from .storage import InMemoryStorage

logger = get_logger(__name__)

# No 0/O, 1/I/L
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
CODE_PATTERN = re.compile(r"^[A-Z]+-[A-Z0-9]{6}$")


class Attribution(BaseModel):
    referrer_id: str
    referral_code: str
    click_id: Optional[str] = None
    commission_rate: Decimal = MEMBER_RATE
    source: str


class AttributionRequest(BaseModel):
    conversion_id: str
    creator_id: str
    converting_member_id: str
    converting_user_id: Optional[str] = None
    referral_code: Optional[str] = None
    click_based: bool = True
    fingerprint: Optional[str] = None
    ip_hash: Optional[str] = None
    occurred_at: datetime


def generate_referral_code(name: str) -> str:
    """Referral code in the form FIRSTNAME-ABC123."""
    first = re.split(r"[\s@]", name.strip())[0] if name.strip() else ""
    first = re.sub(r"[^A-Z]", "", first.upper())[:10]
    suffix = "".join(secrets.choice(CODE_ALPHABET) for _ in range(6))
    return f"{first or 'USER'}-{suffix}"


def is_valid_referral_code(code: str) -> bool:
    return bool(CODE_PATTERN.match(code))


def hash_ip(ip: Optional[str], salt: Optional[str] = None) -> str:
    """Salted, truncated SHA-256 of the client IP (first hop, port stripped)."""
    if not ip:
        return "unknown"
    clean = ip.split(",")[0].strip()
    if clean.count(":") == 1:
        clean = clean.split(":")[0]
    salt = default_settings.ip_hash_salt if salt is None else salt
    return hashlib.sha256((clean + salt).encode()).hexdigest()[:16]


class AttributionResolver:
    def __init__(self, store: InMemoryStorage, settings: Optional[Settings] = None):
        self.store = store
        self.settings = settings or default_settings

    @property
    def window(self) -> timedelta:
        return timedelta(days=self.settings.attribution_window_days)

    def record_click(
        self,
        referral_code: str,
        fingerprint: Optional[str] = None,
        ip_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[AttributionClick]:
        """Record a referral link visit; unknown codes are ignored."""
        now = now or utcnow()
        code = referral_code.upper().strip()
        if not self.store.referral_code_exists(code):
            logger.info("click_unknown_code", referral_code=code)
            return None
        click = AttributionClick(
            referral_code=code,
            fingerprint=fingerprint,
            ip_hash=ip_hash,
            created_at=now,
            expires_at=now + self.window,
        )
        self.store.add_click(click)
        logger.info("click_recorded", referral_code=code, click_id=click.id)
        return click

    def resolve(self, request: AttributionRequest) -> Optional[Attribution]:
        """Resolve the referrer for a conversion, or None for organic.

        Resolving the same conversion id again returns the first answer.
        """
        with self.store.transaction():
            found, cached = self.store.get_attribution(request.conversion_id)
            if found:
                return Attribution(**cached) if cached else None

            try:
                attribution = self._resolve(request)
            except AttributionAmbiguous as e:
                logger.warning(
                    "attribution_ambiguous",
                    conversion_id=request.conversion_id,
                    detail=str(e),
                )
                attribution = None

            if attribution and attribution.click_id:
                click = self.store.get_click(attribution.click_id)
                click.converted = True
                click.converted_by = request.conversion_id
                self.store.update_click(click)

            self.store.save_attribution(
                request.conversion_id,
                attribution.model_dump() if attribution else None,
            )
            return attribution

    def _resolve(self, request: AttributionRequest) -> Optional[Attribution]:
        member = self.store.get_member(request.converting_member_id)
        code = request.referral_code.upper().strip() if request.referral_code else None

        if member and member.referred_by:
            referrer = self.store.get_member(member.referred_by)
            if referrer is None:
                logger.warning("referrer_missing", member_id=member.id, referred_by=member.referred_by)
                return None
            if code and code != referrer.referral_code:
                raise AttributionAmbiguous(
                    f"Member {member.id} is referred by {referrer.referral_code} but event carries {code}"
                )
            if self._is_self_referral(referrer, request):
                return None
            return Attribution(
                referrer_id=referrer.id,
                referral_code=referrer.referral_code,
                source="existing",
            )

        if member and self.store.count_payments_by_member(member.id) > 0:
            # Established organic member: no retroactive attribution
            return None

        click = None
        if code:
            referrer = self.store.get_member_by_code(code)
            if referrer is None or referrer.creator_id != request.creator_id:
                logger.info("attribution_code_rejected", referral_code=code, creator_id=request.creator_id)
                return None
            if request.click_based:
                click = self._latest_valid_click(self.store.clicks_for_code(code), request)
                if click is None:
                    logger.info("attribution_no_valid_click", referral_code=code)
                    return None
            source = "click" if click else "code"
        elif request.fingerprint:
            candidates = [
                c for c in self.store.clicks_for_fingerprint(request.fingerprint)
                if self._usable(c, request)
            ]
            if not candidates:
                return None
            latest = max(c.created_at for c in candidates)
            tied = [c for c in candidates if c.created_at == latest]
            if len({c.referral_code for c in tied}) > 1:
                raise AttributionAmbiguous(
                    f"Fingerprint matches {len(tied)} referral codes at the same instant"
                )
            click = tied[0]
            referrer = self.store.get_member_by_code(click.referral_code)
            if referrer is None or referrer.creator_id != request.creator_id:
                return None
            source = "fingerprint"
        else:
            return None

        if self._is_self_referral(referrer, request):
            return None

        return Attribution(
            referrer_id=referrer.id,
            referral_code=referrer.referral_code,
            click_id=click.id if click else None,
            source=source,
        )

    def _usable(self, click: AttributionClick, request: AttributionRequest) -> bool:
        if not click.is_valid_at(request.occurred_at):
            return False
        return not click.converted or click.converted_by == request.conversion_id

    def _latest_valid_click(
        self, clicks: list[AttributionClick], request: AttributionRequest
    ) -> Optional[AttributionClick]:
        usable = [c for c in clicks if self._usable(c, request)]
        if not usable:
            return None
        return max(usable, key=lambda c: c.created_at)

    def _is_self_referral(self, referrer: Member, request: AttributionRequest) -> bool:
        if referrer.id == request.converting_member_id:
            logger.info("self_referral_excluded", referrer_id=referrer.id, check="member")
            return True
        if request.converting_user_id and request.converting_user_id == referrer.user_id:
            logger.info("self_referral_excluded", referrer_id=referrer.id, check="user")
            return True

        since = request.occurred_at - timedelta(days=self.settings.self_referral_lookback_days)
        for sighting in self.store.devices_for_member(referrer.id, since=since):
            if sighting.seen_at > request.occurred_at:
                continue
            if request.fingerprint and sighting.fingerprint == request.fingerprint:
                logger.info("self_referral_excluded", referrer_id=referrer.id, check="fingerprint")
                return True
            if request.ip_hash and sighting.ip_hash == request.ip_hash:
                logger.info("self_referral_excluded", referrer_id=referrer.id, check="ip")
                return True
        return False
