"""Unit tests for the token estimator."""

from chatmodels import Message
from groupchat.services.token_estimator import estimate, estimate_messages


def _message(content: str) -> Message:
    return Message(id=content or "empty", chat_id="chat-1", author_id="alice", content=content)


class TestEstimate:
    """Test character-based token estimates."""

    def test_empty_text_is_zero(self):
        assert estimate("") == 0
        assert estimate(None) == 0

    def test_rounds_up(self):
        """Four characters per token, partial tokens count as whole ones."""
        assert estimate("abcd") == 1
        assert estimate("abcde") == 2
        assert estimate("a" * 400) == 100

    def test_monotone_in_length(self):
        estimates = [estimate("x" * n) for n in range(50)]
        assert estimates == sorted(estimates)

    def test_estimate_messages_sums_contents(self):
        messages = [_message("abcd"), _message("abcdefgh"), _message("")]
        assert estimate_messages(messages) == 3
