# ensoul/identity.py
import hashlib
import logging
import re
import secrets
import unicodedata
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from web3 import Web3

from ensoul.entities import (
    Claw,
    ClawBinding,
    Fragment,
    Soul,
    WalletSession,
    CLAW_STATUS_CLAIMED,
    CLAW_STATUS_PENDING_CLAIM,
    utcnow,
)
from ensoul.errors import Conflict, NotFound, Unauthenticated, ValidationFailed
from ensoul.settings import Tuning

logger = logging.getLogger("ensoul_backend")

LOGIN_PREFIX = "ensoul:login:"
API_KEY_PREFIX = "ensoul_sk_"
CLAIM_CODE_PREFIX = "ensoul_claim_"
VERIFICATION_WORDS = ["reef", "coral", "wave", "shell", "tide", "pearl", "kelp", "drift"]

# zero-width, directional formatting, BOM, soft hyphen and friends
_INVISIBLE_RE = re.compile("[\u200b-\u200f\u202a-\u202e\u2060-\u2069\ufeff\u00ad\u034f\u061c\u180e]")
_CLAW_NAME_RE = re.compile(r"^[\w .\-]{1,100}$")
MAX_DESCRIPTION_LEN = 500


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def sanitize_identifier(raw: str) -> str:
    """Strip invisible/control characters, trim and lower-case."""
    cleaned = _INVISIBLE_RE.sub("", raw or "")
    cleaned = "".join(ch for ch in cleaned if unicodedata.category(ch) != "Cc" or ch in " \t")
    return cleaned.strip().lower()


def validate_claw_name(raw: str) -> str:
    name = sanitize_identifier(raw)
    if not name:
        raise ValidationFailed("name is required", code="invalid_name")
    if not _CLAW_NAME_RE.match(name):
        raise ValidationFailed(
            "invalid name: only letters, numbers, spaces, dots, hyphens and underscores are allowed (max 100 characters)",
            code="invalid_name",
        )
    return name


def normalize_address(address: str) -> str:
    if not address or not Web3.is_address(address):
        raise ValidationFailed("Invalid wallet address format", code="invalid_address")
    return Web3.to_checksum_address(address)


def verify_wallet_signature(message: str, signature: str, claimed: str) -> str:
    """
    EIP-191 personal_sign check. Returns the checksummed signer address,
    raises Unauthenticated when the signature does not recover to `claimed`.
    """
    claimed = normalize_address(claimed)
    try:
        recovered = Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        raise Unauthenticated(f"Signature verification failed: {e}", code="bad_signature")
    if recovered.lower() != claimed.lower():
        raise Unauthenticated(
            f"Signature verification failed: recovered {recovered}, claimed {claimed}",
            code="bad_signature",
        )
    return claimed


def _unix(dt: datetime) -> float:
    return dt.replace(tzinfo=timezone.utc).timestamp()


class IdentityService:
    """
    Wallet sessions and Claw identities.

    Raw secrets (session tokens, API keys) are returned to the caller once
    and only their SHA-256 is stored.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        tuning: Tuning | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.SessionFactory = session_factory
        self.tuning = tuning or Tuning()
        self.clock = clock

    # -----------------------
    # Wallet sessions
    # -----------------------

    def login(self, address: str, signature: str, message: str) -> tuple[str, Dict[str, Any]]:
        address = normalize_address(address)
        if not message or not message.startswith(LOGIN_PREFIX):
            raise ValidationFailed("Invalid message format", code="invalid_message")
        try:
            ts = int(message[len(LOGIN_PREFIX):])
        except ValueError:
            raise ValidationFailed("Invalid message timestamp", code="invalid_message")

        now = self.clock()
        if abs(_unix(now) - ts) > self.tuning.login_message_max_age_seconds:
            raise Unauthenticated("Login message expired, please sign again", code="message_expired")

        verify_wallet_signature(message, signature, address)

        token = secrets.token_hex(32)
        expires_at = now + timedelta(seconds=self.tuning.session_ttl_seconds)
        session = self.SessionFactory()
        try:
            session.execute(delete(WalletSession).where(WalletSession.wallet_addr == address))
            session.add(WalletSession(token_hash=hash_token(token), wallet_addr=address, expires_at=expires_at))
            session.commit()
        finally:
            session.close()

        logger.info(f"[auth] Wallet {address} logged in")
        return token, {"address": address, "message": "Logged in successfully"}

    def resolve_session(self, token: Optional[str]) -> Optional[str]:
        """Wallet address behind a live session token, or None."""
        if not token:
            return None
        session = self.SessionFactory()
        try:
            row = session.execute(
                select(WalletSession).where(WalletSession.token_hash == hash_token(token))
            ).scalar_one_or_none()
            if row is None or row.expires_at <= self.clock():
                return None
            return row.wallet_addr
        finally:
            session.close()

    def require_session(self, token: Optional[str]) -> str:
        wallet = self.resolve_session(token)
        if wallet is None:
            raise Unauthenticated("Not logged in")
        return wallet

    def logout(self, token: Optional[str]) -> None:
        if not token:
            return
        session = self.SessionFactory()
        try:
            session.execute(delete(WalletSession).where(WalletSession.token_hash == hash_token(token)))
            session.commit()
        finally:
            session.close()

    def cleanup_expired_sessions(self) -> int:
        session = self.SessionFactory()
        try:
            result = session.execute(delete(WalletSession).where(WalletSession.expires_at < self.clock()))
            session.commit()
        finally:
            session.close()
        if result.rowcount:
            logger.info(f"[cleanup] Removed {result.rowcount} expired sessions")
        return result.rowcount or 0

    # -----------------------
    # Claws
    # -----------------------

    def register_claw(self, name: str, description: str | None = None) -> Dict[str, Any]:
        name = validate_claw_name(name)
        if description is not None and len(description) > MAX_DESCRIPTION_LEN:
            raise ValidationFailed(
                f"description too long (max {MAX_DESCRIPTION_LEN} characters)",
                code="invalid_description",
            )

        api_key = API_KEY_PREFIX + secrets.token_hex(32)
        claim_code = CLAIM_CODE_PREFIX + secrets.token_hex(16)
        verification_code = f"{secrets.choice(VERIFICATION_WORDS)}-{secrets.token_hex(2).upper()}"

        session = self.SessionFactory()
        try:
            claw = Claw(
                name=name,
                description=description,
                api_key_hash=hash_token(api_key),
                claim_code=claim_code,
                verification_code=verification_code,
                status=CLAW_STATUS_PENDING_CLAIM,
            )
            session.add(claw)
            session.commit()
            claw_id = claw.id
        except IntegrityError:
            session.rollback()
            raise Conflict(f'a claw named "{name}" already exists', code="name_taken")
        finally:
            session.close()

        logger.info(f"[auth] Registered claw '{name}' ({claw_id})")
        return {
            "claw": {
                "id": claw_id,
                "name": name,
                "api_key": api_key,
                "claim_url": f"/claim/{claim_code}",
                "verification_code": verification_code,
            },
            "important": "SAVE YOUR API KEY! You need it for all subsequent requests.",
        }

    def find_claw_by_key(self, session: Session, api_key: Optional[str]) -> Optional[Claw]:
        if not api_key:
            return None
        return session.execute(
            select(Claw).where(Claw.api_key_hash == hash_token(api_key))
        ).scalar_one_or_none()

    def authenticate_claw(self, api_key: Optional[str]) -> Claw:
        session = self.SessionFactory()
        try:
            claw = self.find_claw_by_key(session, api_key)
            if claw is None:
                raise Unauthenticated("Authentication required")
            return claw
        finally:
            session.close()

    def claw_status(self, claw: Claw) -> Dict[str, Any]:
        return {
            "status": claw.status,
            "claimed": claw.status == CLAW_STATUS_CLAIMED,
            "claim_url": f"/claim/{claw.claim_code}",
        }

    def claw_profile(self, claw: Claw) -> Dict[str, Any]:
        return {
            "id": claw.id,
            "name": claw.name,
            "description": claw.description,
            "claim_code": claw.claim_code,
            "verification_code": claw.verification_code,
            "status": claw.status,
            "total_submitted": claw.total_submitted,
            "total_accepted": claw.total_accepted,
            "earnings": float(claw.earnings or 0.0),
        }

    def claw_dashboard(self, claw_id: str, recent: int = 10) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            claw = session.get(Claw, claw_id)
            if claw is None:
                raise NotFound("Claw not found")
            rate = 0.0
            if claw.total_submitted:
                rate = claw.total_accepted / claw.total_submitted * 100
            rows = session.execute(
                select(Fragment, Soul.handle)
                .join(Soul, Soul.id == Fragment.soul_id)
                .where(Fragment.claw_id == claw.id)
                .order_by(Fragment.created_at.desc())
                .limit(recent)
            ).all()
            return {
                "overview": {
                    "total_submitted": claw.total_submitted,
                    "total_accepted": claw.total_accepted,
                    "accept_rate": f"{rate:.1f}%",
                    "earnings": float(claw.earnings or 0.0),
                },
                "recent_contributions": [
                    {
                        "id": f.id,
                        "handle": handle,
                        "dimension": f.dimension,
                        "status": f.status,
                        "confidence": f.confidence,
                        "reject_reason": f.reject_reason,
                        "created_at": f.created_at.isoformat(),
                    }
                    for f, handle in rows
                ],
            }
        finally:
            session.close()

    def claim_info(self, claim_code: str) -> Dict[str, Any]:
        # the claim page shows the name and verification words only
        session = self.SessionFactory()
        try:
            claw = session.execute(select(Claw).where(Claw.claim_code == claim_code)).scalar_one_or_none()
            if claw is None:
                raise NotFound("Claim code not found", code="invalid_claim_code")
            return {"name": claw.name, "verification_code": claw.verification_code, "status": claw.status}
        finally:
            session.close()

    def claim_claw(self, wallet_addr: str, claim_code: str) -> Dict[str, Any]:
        """
        One-time transition pending_claim -> claimed, binding the session
        wallet. A consumed code is a conflict, an unknown one is not found.
        """
        if not claim_code:
            raise ValidationFailed("claim_code is required", code="invalid_claim_code")
        now = self.clock()
        session = self.SessionFactory()
        try:
            result = session.execute(
                update(Claw)
                .where(Claw.claim_code == claim_code)
                .where(Claw.status == CLAW_STATUS_PENDING_CLAIM)
                .values(status=CLAW_STATUS_CLAIMED, wallet_addr=wallet_addr, claimed_at=now)
                .execution_options(synchronize_session=False)
            )
            claw = session.execute(select(Claw).where(Claw.claim_code == claim_code)).scalar_one_or_none()
            if result.rowcount != 1:
                session.rollback()
                if claw is None:
                    raise NotFound("invalid claim code", code="invalid_claim_code")
                raise Conflict("this claw has already been claimed", code="already_claimed")

            self._ensure_binding(session, wallet_addr, claw)
            session.commit()
            name = claw.name
        finally:
            session.close()

        logger.info(f"[auth] Claw '{name}' claimed by {wallet_addr}")
        return {
            "success": True,
            "message": "Claw claimed successfully! It has been added to your dashboard.",
            "claw": {"name": name, "status": CLAW_STATUS_CLAIMED},
        }

    # -----------------------
    # Wallet <-> Claw bindings
    # -----------------------

    def _ensure_binding(self, session: Session, wallet_addr: str, claw: Claw) -> ClawBinding:
        existing = session.execute(
            select(ClawBinding)
            .where(ClawBinding.wallet_addr == wallet_addr)
            .where(ClawBinding.claw_id == claw.id)
        ).scalar_one_or_none()
        if existing is not None:
            return existing
        binding = ClawBinding(wallet_addr=wallet_addr, claw_id=claw.id, claw_name=claw.name)
        session.add(binding)
        session.flush()
        return binding

    def bind_key(self, wallet_addr: str, api_key: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            claw = self.find_claw_by_key(session, api_key)
            if claw is None:
                raise ValidationFailed("Invalid API key", code="invalid_api_key")
            existing = session.execute(
                select(ClawBinding.id)
                .where(ClawBinding.wallet_addr == wallet_addr)
                .where(ClawBinding.claw_id == claw.id)
            ).scalar_one_or_none()
            if existing is not None:
                raise Conflict("This Claw is already bound to your wallet", code="already_bound")
            binding = ClawBinding(wallet_addr=wallet_addr, claw_id=claw.id, claw_name=claw.name)
            session.add(binding)
            session.commit()
            return {"id": binding.id, "name": claw.name}
        except IntegrityError:
            session.rollback()
            raise Conflict("This Claw is already bound to your wallet", code="already_bound")
        finally:
            session.close()

    def list_bindings(self, wallet_addr: str) -> Dict[str, Any]:
        session = self.SessionFactory()
        try:
            rows = session.execute(
                select(ClawBinding)
                .where(ClawBinding.wallet_addr == wallet_addr)
                .order_by(ClawBinding.created_at.asc())
            ).scalars().all()
            return {"claws": [{"id": b.id, "claw_id": b.claw_id, "claw_name": b.claw_name} for b in rows]}
        finally:
            session.close()

    def binding_claw_id(self, wallet_addr: str, binding_id: str) -> str:
        session = self.SessionFactory()
        try:
            claw_id = session.execute(
                select(ClawBinding.claw_id)
                .where(ClawBinding.id == binding_id)
                .where(ClawBinding.wallet_addr == wallet_addr)
            ).scalar_one_or_none()
            if claw_id is None:
                raise NotFound("Binding not found")
            return claw_id
        finally:
            session.close()

    def unbind(self, wallet_addr: str, binding_id: str) -> None:
        session = self.SessionFactory()
        try:
            result = session.execute(
                delete(ClawBinding)
                .where(ClawBinding.id == binding_id)
                .where(ClawBinding.wallet_addr == wallet_addr)
            )
            if result.rowcount == 0:
                session.rollback()
                raise NotFound("Binding not found")
            session.commit()
        finally:
            session.close()
