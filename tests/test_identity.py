"""
Test identity provider and sign-in payload parsing

Run with: python3 tests/test_identity.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from aers.contracts import Identity
from aers.core.identity import InMemoryIdentityProvider, identity_from_json


def test_identity_from_json():
    identity = identity_from_json({
        'user_id': 'u1',
        'email': 'ana@example.com',
        'profile': {'first_name': 'Ana', 'favourite_colour': 'blue'},
    })

    assert identity.user_id == 'u1'
    assert identity.email == 'ana@example.com'
    assert dict(identity.profile) == {'first_name': 'Ana'}

    print("✓ Identity parsing test passed")


def test_identity_from_json_rejects_bad_payloads():
    for data in ({}, {'user_id': ''}, {'user_id': 'u1', 'profile': ['x']}, 'u1'):
        with pytest.raises(ValueError):
            identity_from_json(data)

    print("✓ Bad identity payload test passed")


def test_provider_notifies_subscribers():
    provider = InMemoryIdentityProvider(loading=True)
    seen = []
    unsubscribe = provider.subscribe(seen.append)
    identity = Identity(user_id='u1')

    assert provider.loading
    provider.sign_in(identity)
    assert not provider.loading
    assert provider.current() == identity

    provider.sign_out()
    assert provider.current() is None

    unsubscribe()
    provider.sign_in(identity)
    assert seen == [identity, None]

    print("✓ Subscription test passed")


def test_provider_type_checks():
    provider = InMemoryIdentityProvider()

    with pytest.raises(TypeError):
        provider.sign_in({'user_id': 'u1'})
    with pytest.raises(TypeError):
        provider.subscribe("not callable")

    print("✓ Provider type check test passed")


if __name__ == "__main__":
    test_identity_from_json()
    test_identity_from_json_rejects_bad_payloads()
    test_provider_notifies_subscribers()
    test_provider_type_checks()
    print("\nAll identity tests passed ✓")
