"""
kudos.engine.actors — Actor resolution
=======================================

Maps a raw source payload (or a batch row) to the internal person who
should receive the reward.  Resolution is an ordered list of named
strategies; the first one that yields an email or a name wins:

1. ``email_field`` — an explicit email-like field in the payload.
2. ``owner_id``    — a CRM owner / telephony user id looked up in the maps.
3. ``spoken_name`` — a free-text name (``DX PORT の <name>`` or a bare
   name) looked up in the name → email map.

The display name then comes from the email → name map, the owner map, the
spoken name, the email local part, or finally the configured default label.
Resolution never raises; an unmatched payload yields the default actor.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from kudos.constants import is_email, norm_space

if TYPE_CHECKING:
    from kudos.config import IdentityMaps

logger = logging.getLogger(__name__)

__all__ = [
    "Actor",
    "Credential",
    "ActorDirectory",
    "ActorResolver",
    "extract_spoken_name",
    "DEFAULT_STRATEGIES",
]

DEFAULT_ACTOR_LABEL = "Unassigned"

_SOURCE_USER_RE = re.compile(r"userId:(\d+)", re.IGNORECASE)
_SPOKEN_NAME_RE = re.compile(r"D\s*X\s*(?:P\s*O\s*R\s*T)?\s*の\s*(\S.*)$", re.IGNORECASE)


@dataclass(frozen=True, slots=True)
class Actor:
    """The person a reward is attributed to."""

    display_name: str
    email: str | None = None
    strategy: str = "default"

    @property
    def resolved(self) -> bool:
        return self.strategy != "default"


@dataclass(frozen=True, slots=True)
class Credential:
    """Gamification API credential for one member."""

    user_id: str
    api_token: str


@dataclass(frozen=True, slots=True)
class _Hit:
    email: str | None = None
    name: str | None = None


# ---------------------------------------------------------------------------
# Directory — the normalized identity maps
# ---------------------------------------------------------------------------
class ActorDirectory:
    """Owner / name / telephony / credential maps with normalized keys.

    Emails are lower-cased; names are whitespace-folded.
    """

    def __init__(
        self,
        owners: dict | None = None,
        names: dict | None = None,
        telephony_users: dict | None = None,
        credentials: dict | None = None,
        default_label: str = DEFAULT_ACTOR_LABEL,
    ) -> None:
        self.default_label = default_label
        self.owners: dict[str, dict[str, str]] = {}
        for owner_id, entry in (owners or {}).items():
            if isinstance(entry, dict):
                self.owners[str(owner_id)] = {
                    "name": norm_space(entry.get("name")),
                    "email": str(entry.get("email") or "").strip().lower(),
                }

        self.name_to_email: dict[str, str] = {}
        for name, email in (names or {}).items():
            if name and email:
                self.name_to_email[norm_space(name)] = str(email).strip().lower()
        self.email_to_name: dict[str, str] = {
            email: name for name, email in self.name_to_email.items()
        }

        self.telephony_users: dict[str, str] = {
            str(uid): str(email).strip().lower()
            for uid, email in (telephony_users or {}).items()
            if uid and email
        }

        self.credentials: dict[str, Credential] = {}
        for email, cred in (credentials or {}).items():
            if not isinstance(cred, dict):
                continue
            user_id = cred.get("userId") or cred.get("user_id")
            token = cred.get("apiToken") or cred.get("api_token")
            if user_id and token:
                self.credentials[str(email).strip().lower()] = Credential(str(user_id), str(token))

    @classmethod
    def from_maps(cls, maps: IdentityMaps, default_label: str = DEFAULT_ACTOR_LABEL) -> ActorDirectory:
        return cls(
            owners=maps.owners,
            names=maps.names,
            telephony_users=maps.telephony_users,
            credentials=maps.credentials,
            default_label=default_label,
        )

    def credential_for(self, email: str | None) -> Credential | None:
        if not email:
            return None
        return self.credentials.get(email.strip().lower())

    def members(self) -> list[str]:
        """Emails of every member holding a gamification credential."""
        return sorted(self.credentials)

    def is_internal(self, name: str | None = None, email: str | None = None) -> bool:
        """True when the email has a credential or the name is in the name map."""
        em = (email or "").strip().lower()
        nm = norm_space(name)
        return bool(em and em in self.credentials) or bool(nm and nm in self.name_to_email)

    def display_name_for(self, email: str | None, fallback: str | None = None) -> str:
        if email and email in self.email_to_name:
            return self.email_to_name[email]
        if fallback:
            return fallback
        if email:
            return email.split("@")[0]
        return self.default_label


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------
Strategy = Callable[[dict, ActorDirectory], _Hit | None]


def _dig(raw: dict, *path: str) -> object:
    node: object = raw
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def email_field(raw: dict, directory: ActorDirectory) -> _Hit | None:
    for path in (
        ("actorEmail",),
        ("ownerEmail",),
        ("userEmail",),
        ("owner", "email"),
        ("properties", "owner_email"),
        ("properties", "hubspot_owner_email"),
    ):
        value = _dig(raw, *path)
        if is_email(value):
            return _Hit(email=str(value).strip().lower())
    return None


def _owner_id(raw: dict) -> str | None:
    source_id = str(raw.get("sourceId") or raw.get("source_id") or "")
    m = _SOURCE_USER_RE.search(source_id)
    candidates = (
        _dig(raw, "properties", "hubspot_owner_id"),
        raw.get("hubspot_owner_id"),
        m.group(1) if m else None,
        raw.get("ownerId"),
        raw.get("associatedOwnerId"),
        _dig(raw, "owner", "id"),
        raw.get("hsUserId"),
        raw.get("createdById"),
        raw.get("actorId"),
        raw.get("userId"),
    )
    for value in candidates:
        if value not in (None, ""):
            return str(value)
    return None


def owner_id(raw: dict, directory: ActorDirectory) -> _Hit | None:
    oid = _owner_id(raw)
    if oid is not None and oid in directory.owners:
        entry = directory.owners[oid]
        return _Hit(email=entry["email"] or None, name=entry["name"] or None)

    uid = raw.get("telephonyUserId") or oid
    if uid is not None and str(uid) in directory.telephony_users:
        return _Hit(email=directory.telephony_users[str(uid)])
    return None


def extract_spoken_name(text: object) -> str | None:
    """Pull ``<name>`` out of ``DX PORT の <name>``; ``None`` if absent."""
    t = norm_space(text)
    if not t:
        return None
    m = _SPOKEN_NAME_RE.search(t)
    if m:
        return norm_space(m.group(1)) or None
    return None


def spoken_name(raw: dict, directory: ActorDirectory) -> _Hit | None:
    text = raw.get("spokenName")
    name = extract_spoken_name(text) or norm_space(text)
    if not name:
        return None
    return _Hit(email=directory.name_to_email.get(name), name=name)


DEFAULT_STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("email_field", email_field),
    ("owner_id", owner_id),
    ("spoken_name", spoken_name),
)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------
class ActorResolver:
    """Runs the strategy chain against a payload."""

    def __init__(
        self,
        directory: ActorDirectory,
        strategies: Sequence[tuple[str, Strategy]] = DEFAULT_STRATEGIES,
    ) -> None:
        self.directory = directory
        self.strategies = tuple(strategies)

    def resolve(self, raw: dict | None, order: Sequence[str] | None = None) -> Actor:
        """Return the :class:`Actor` for *raw*.

        *order* restricts and reorders the strategies by name (the batch
        path prefers the spoken name over an email column).
        """
        raw = raw if isinstance(raw, dict) else {}
        chain = self.strategies
        if order is not None:
            by_name = dict(self.strategies)
            chain = tuple((name, by_name[name]) for name in order if name in by_name)

        for name, strategy in chain:
            hit = strategy(raw, self.directory)
            if hit is None or not (hit.email or hit.name):
                continue
            email = hit.email.lower() if hit.email else None
            return Actor(
                display_name=self.directory.display_name_for(email, hit.name),
                email=email,
                strategy=name,
            )

        logger.info("Unmatched actor (keys=%s)", sorted(raw)[:10])
        return Actor(display_name=self.directory.default_label)
