"""
Test Transcript Manager

Run with: python3 tests/test_transcript.py
"""

import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest

from aers.contracts import AttachmentPayload, Turn, TurnRole
from aers.core.transcript import GREETING_TEXT, Transcript


def test_starts_with_greeting():
    transcript = Transcript()

    assert len(transcript) == 1
    greeting = transcript.display_view()[0]
    assert greeting.text == GREETING_TEXT
    assert greeting.local_only
    assert transcript.context_view() == ()
    assert not transcript.has_exchange()

    print("✓ Greeting test passed")


def test_context_excludes_local_turns():
    transcript = Transcript()
    transcript.append(Turn(role=TurnRole.HUMAN, text="I got a rash"))
    transcript.append(Turn(role=TurnRole.AGENT, text="Sorry to hear that."))

    context = transcript.context_view()
    assert [t.text for t in context] == ["I got a rash", "Sorry to hear that."]
    assert len(transcript.display_view()) == 3
    assert transcript.has_exchange()

    print("✓ Context view test passed")


def test_append_returns_length_and_checks_type():
    transcript = Transcript()
    assert transcript.append(Turn(role=TurnRole.HUMAN, text="hi")) == 2

    with pytest.raises(TypeError):
        transcript.append({'role': 'human', 'text': 'hi'})

    print("✓ Append test passed")


def test_views_are_snapshots():
    transcript = Transcript()
    view = transcript.display_view()
    transcript.append(Turn(role=TurnRole.HUMAN, text="hi"))

    assert len(view) == 1, "Earlier view must not change"

    print("✓ Snapshot test passed")


def test_reset():
    transcript = Transcript()
    transcript.append(Turn(role=TurnRole.HUMAN, text="hi"))
    transcript.reset()

    assert len(transcript) == 1
    assert transcript.display_view()[0].text == GREETING_TEXT

    print("✓ Reset test passed")


def test_json_drops_attachment_content():
    transcript = Transcript()
    payload = AttachmentPayload(name='label.png', mime_type='image/png', data='aGVsbG8=', size=5)
    transcript.append(Turn(role=TurnRole.HUMAN, text="photo", attachments=(payload,)))

    data = transcript.to_json()
    assert data[1]['role'] == 'human'
    assert data[1]['attachments'] == [{'name': 'label.png', 'size': 5, 'type': 'image/png'}]
    assert 'data' not in data[1]['attachments'][0]

    restored = Transcript.from_json(data)
    assert [t.text for t in restored.display_view()] == [GREETING_TEXT, "photo"]
    assert restored.display_view()[0].local_only
    assert restored.display_view()[1].attachments == ()

    print("✓ JSON round trip test passed")


if __name__ == "__main__":
    test_starts_with_greeting()
    test_context_excludes_local_turns()
    test_append_returns_length_and_checks_type()
    test_views_are_snapshots()
    test_reset()
    test_json_drops_attachment_content()
    print("\nAll transcript tests passed ✓")
