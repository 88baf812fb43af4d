"""
Identity provider - Verified identity as seen by the session

The verification mechanism itself is external. The session only needs:
- current(): the verified Identity, or None
- loading: True while verification is still resolving
- subscribe(callback): change notification, callback(identity or None)

InMemoryIdentityProvider is the provider used by the web layer and the
console harness: the outer surface reports sign-in/sign-out and the
provider notifies subscribers.
"""

import logging
import threading
from typing import Any, Callable, List, Mapping, Optional

from aers.contracts import Identity

logger = logging.getLogger(__name__)

IdentityCallback = Callable[[Optional[Identity]], None]

PROFILE_KEYS = (
    'first_name', 'last_name', 'phone', 'address', 'city', 'state',
    'zip_code', 'country', 'reported_to_manufacturer_preference',
    'permission_to_share_identity_preference',
)


def identity_from_json(data: Any) -> Identity:
    """
    Build an Identity from a sign-in payload.

    Args:
        data: {"user_id": ..., "email": ..., "profile": {...}}

    Raises:
        ValueError: If user_id is missing or profile is not an object
    """
    if not isinstance(data, Mapping) or not data.get('user_id'):
        raise ValueError("identity must be an object with a non-empty 'user_id'")

    profile = data.get('profile') or {}
    if not isinstance(profile, Mapping):
        raise ValueError("identity 'profile' must be an object")

    unknown = set(profile.keys()) - set(PROFILE_KEYS)
    if unknown:
        logger.warning(f"Ignoring unknown profile keys: {sorted(unknown)}")

    return Identity(
        user_id=str(data['user_id']),
        email=data.get('email'),
        profile={key: profile[key] for key in PROFILE_KEYS if key in profile},
    )


class InMemoryIdentityProvider:
    """Identity holder with change notification"""

    def __init__(self, identity: Optional[Identity] = None, loading: bool = False):
        self._identity = identity
        self._loading = loading
        self._subscribers: List[IdentityCallback] = []
        self._lock = threading.Lock()

    @property
    def loading(self) -> bool:
        return self._loading

    def current(self) -> Optional[Identity]:
        return self._identity

    def subscribe(self, callback: IdentityCallback) -> Callable[[], None]:
        """
        Register a change callback.

        Returns:
            Callable that removes the subscription
        """
        if not callable(callback):
            raise TypeError("callback must be callable")

        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def begin_verification(self) -> None:
        """Mark verification as in progress (identity unknown yet)"""
        self._loading = True

    def sign_in(self, identity: Identity) -> None:
        if not isinstance(identity, Identity):
            raise TypeError(f"identity must be Identity, got {type(identity).__name__}")
        self._identity = identity
        self._loading = False
        logger.info(f"Identity established: {identity.user_id}")
        self._notify()

    def sign_out(self) -> None:
        self._identity = None
        self._loading = False
        logger.info("Identity cleared")
        self._notify()

    def _notify(self) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            callback(self._identity)
