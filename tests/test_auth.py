"""
Authenticator tests: PIN format, lookup, rate limiting, registration and rotation.
"""
import pytest

from call_control import auth as auth_module
from call_control.auth import Authenticator, check_pin_format
from call_control.errors import AuthError, FormatError
from call_control.users import InMemoryUserDirectory, User


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def directory():
    return InMemoryUserDirectory([
        User(id="u1", pin="123456", phone="+15551230000"),
        User(id="u2", pin="654321", is_active=False),
    ])


@pytest.mark.parametrize("raw", ["1234", "1234567", "12a456", "", None, "12345\n", "١٢٣٤٥٦"])
def test_check_pin_format_rejects(raw):
    with pytest.raises(FormatError):
        check_pin_format(raw)


def test_check_pin_format_accepts_six_digits():
    assert check_pin_format("000123") == "000123"


@pytest.mark.asyncio
async def test_validate_pin_match_updates_last_access(directory):
    authenticator = Authenticator(directory)

    user = await authenticator.validate_pin("123456", identifier="+1555")

    assert user is not None
    assert user.id == "u1"
    assert directory.get("u1").last_access_at is not None


@pytest.mark.asyncio
async def test_validate_pin_unknown_returns_none_and_records_attempt(directory):
    authenticator = Authenticator(directory)

    assert await authenticator.validate_pin("999999", identifier="+1555") is None
    assert len(authenticator.failed_attempts("+1555")) == 1


@pytest.mark.asyncio
async def test_validate_pin_inactive_user_is_unknown(directory):
    authenticator = Authenticator(directory)

    assert await authenticator.validate_pin("654321") is None


@pytest.mark.asyncio
async def test_validate_pin_format_error(directory):
    authenticator = Authenticator(directory)

    with pytest.raises(FormatError):
        await authenticator.validate_pin("1234")


@pytest.mark.asyncio
async def test_rate_limit_sliding_window(directory):
    clock = FakeClock()
    authenticator = Authenticator(directory, rate_limit_attempts=3, rate_limit_window_seconds=100, clock=clock)

    for _ in range(3):
        assert authenticator.check_rate_limit("+1555")
        await authenticator.validate_pin("000000", identifier="+1555")

    assert not authenticator.check_rate_limit("+1555")
    assert authenticator.check_rate_limit("+1999")

    clock.now += 101
    assert authenticator.check_rate_limit("+1555")


@pytest.mark.asyncio
async def test_expired_identifiers_are_forgotten(directory):
    clock = FakeClock()
    authenticator = Authenticator(directory, rate_limit_window_seconds=100, clock=clock)
    for caller in ("+1555", "+1666"):
        await authenticator.validate_pin("000000", identifier=caller)

    clock.now += 101
    assert authenticator.failed_attempts("+1555") == []
    assert authenticator.check_rate_limit("+1666")

    assert authenticator._failed == {}


@pytest.mark.asyncio
async def test_authenticate_raises_for_unknown_pin(directory):
    authenticator = Authenticator(directory)

    assert (await authenticator.authenticate("123456")).id == "u1"
    with pytest.raises(AuthError):
        await authenticator.authenticate("999999", identifier="+1555")
    assert len(authenticator.failed_attempts("+1555")) == 1


@pytest.mark.asyncio
async def test_rotate_pin_assigns_unused_pin(directory):
    authenticator = Authenticator(directory)

    pin = await authenticator.rotate_pin("u1")

    assert len(pin) == 6 and pin.isdigit()
    assert pin not in ("123456", "654321")
    assert directory.get("u1").pin == pin


@pytest.mark.asyncio
async def test_rotate_pin_retries_collisions(directory, monkeypatch):
    draws = iter([654321, 123456, 42])
    monkeypatch.setattr(auth_module.secrets, "randbelow", lambda _n: next(draws))
    authenticator = Authenticator(directory)

    assert await authenticator.rotate_pin("u1") == "000042"


@pytest.mark.asyncio
async def test_rotate_pin_gives_up_after_cap(directory, monkeypatch):
    monkeypatch.setattr(auth_module.secrets, "randbelow", lambda _n: 654321)
    authenticator = Authenticator(directory)

    with pytest.raises(RuntimeError):
        await authenticator.rotate_pin("u1")


@pytest.mark.asyncio
async def test_register_user_gets_unique_pin(directory):
    authenticator = Authenticator(directory)

    user = await authenticator.register_user(phone="+15559990000", name="Grace")

    assert directory.get(user.id) is user
    assert len(user.pin) == 6 and user.pin not in ("123456", "654321")
    assert (await authenticator.validate_pin(user.pin)).id == user.id


@pytest.mark.asyncio
async def test_register_user_duplicate_phone(directory):
    with pytest.raises(ValueError):
        await Authenticator(directory).register_user(phone="+15551230000")


@pytest.mark.asyncio
async def test_rotate_pin_unknown_user(directory):
    with pytest.raises(KeyError):
        await Authenticator(directory).rotate_pin("nobody")


def test_load_yaml(tmp_path):
    path = tmp_path / "users.yaml"
    path.write_text(
        "users:\n"
        "  - id: u1\n"
        "    pin: 42\n"
        "    phone: '+15551230000'\n"
        "  - id: u2\n"
        "    pin: '999999'\n"
        "    is_active: false\n",
        encoding="utf-8",
    )

    directory = InMemoryUserDirectory.load_yaml(path)

    assert directory.get("u1").pin == "000042"
    assert directory.get("u2").is_active is False
