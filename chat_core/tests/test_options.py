import pytest

from chat_core.domain.exceptions import ConfigurationError, ValidationError
from chat_core.domain.stream import SendOptions


def test_defaults_are_valid():
    opts = SendOptions()
    assert opts.streaming is True
    assert opts.auto_continue is None
    assert opts.max_auto_continue is None


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_auto_continue": -1},
        {"max_auto_continue": 1.5},
        {"max_auto_continue": True},
        {"temperature": 3.0},
        {"top_p": 0},
        {"max_tokens": 0},
        {"session_token": "  "},
        {"tool_choice": "always"},
        {"streaming": "yes"},
    ],
)
def test_invalid_options(kwargs):
    with pytest.raises(ConfigurationError) as exc:
        SendOptions(**kwargs)
    assert exc.value.code == "INVALID_OPTIONS"
    assert isinstance(exc.value, ValidationError)
