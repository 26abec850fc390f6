import pytest
from contextlib import asynccontextmanager
from datetime import timedelta

from oae.core.errors import BadPin, InvalidInput, Locked, NotFound
from oae.services.pin import PinService, hash_pin
from oae.services.security_log import SecurityLog


@pytest.fixture
def pins(session_factory, clock):
    log = SecurityLog(session_factory, clock=clock)
    # cheap scrypt cost keeps the suite fast
    return PinService(session_factory, log, max_attempts=3, lockout=timedelta(minutes=15), clock=clock, scrypt_n=2 ** 4)


def test_hash_depends_on_salt():
    assert hash_pin("1234", b"a" * 16, n=16) != hash_pin("1234", b"b" * 16, n=16)
    assert hash_pin("1234", b"a" * 16, n=16) == hash_pin("1234", b"a" * 16, n=16)


@pytest.mark.asyncio
@pytest.mark.parametrize("pin", ["123", "123456789", "12a4", "", None, 1234])
async def test_pin_format(pins, pin):
    with pytest.raises(InvalidInput):
        await pins.set_pin("u1", pin)


@pytest.mark.asyncio
async def test_set_and_verify(pins):
    await pins.set_pin("u1", "2468")
    assert await pins.has_pin("u1")
    assert await pins.verify("u1", "2468") is True
    status = await pins.status("u1")
    assert status["has_pin"] is True
    assert status["last_used_at"] is not None
    assert status["failed_attempts"] == 0


@pytest.mark.asyncio
async def test_verify_without_pin(pins):
    with pytest.raises(NotFound):
        await pins.verify("nobody", "1234")
    events = await pins.log.list(user_id="nobody")
    assert events[0].details == "no_pin"


@pytest.mark.asyncio
async def test_lockout_after_max_attempts(pins, clock):
    await pins.set_pin("u1", "2468")
    with pytest.raises(BadPin):
        await pins.verify("u1", "0000")
    with pytest.raises(BadPin):
        await pins.verify("u1", "0000")
    with pytest.raises(BadPin) as exc:
        await pins.verify("u1", "0000")
    assert exc.value.details["attempts"] == 3

    # locked even for the right PIN
    with pytest.raises(Locked):
        await pins.verify("u1", "2468")
    status = await pins.status("u1")
    assert status["locked_until"] == clock() + timedelta(minutes=15)

    clock.advance(minutes=15, seconds=1)
    assert await pins.verify("u1", "2468") is True
    assert (await pins.status("u1"))["failed_attempts"] == 0


@pytest.mark.asyncio
async def test_lockout_is_audited(pins):
    await pins.set_pin("u1", "2468")
    for _ in range(3):
        with pytest.raises(BadPin):
            await pins.verify("u1", "0000")
    with pytest.raises(Locked):
        await pins.verify("u1", "2468")

    events = list(reversed(await pins.log.list(user_id="u1")))
    assert [(e.action, e.success, e.details) for e in events] == [
        ("pin.create", True, ""),
        ("pin.verify", False, "bad_pin 1/3"),
        ("pin.verify", False, "bad_pin 2/3"),
        ("pin.verify", False, "bad_pin 3/3"),
        ("pin.lock", False, "locked"),
        ("pin.verify", False, "locked_out"),
    ]


@pytest.mark.asyncio
async def test_success_resets_counter(pins):
    await pins.set_pin("u1", "2468")
    for _ in range(2):
        with pytest.raises(BadPin):
            await pins.verify("u1", "0000")
    await pins.verify("u1", "2468")
    with pytest.raises(BadPin) as exc:
        await pins.verify("u1", "0000")
    assert exc.value.details["attempts"] == 1


@pytest.mark.asyncio
async def test_change_pin(pins):
    await pins.set_pin("u1", "2468")
    with pytest.raises(BadPin):
        await pins.change_pin("u1", "1111", "13579")
    with pytest.raises(InvalidInput):
        await pins.change_pin("u1", "2468", "12")
    await pins.change_pin("u1", "2468", "13579")
    assert await pins.verify("u1", "13579")
    with pytest.raises(BadPin):
        await pins.verify("u1", "2468")


@pytest.mark.asyncio
async def test_reset_clears_lockout(pins):
    await pins.set_pin("u1", "2468")
    for _ in range(3):
        with pytest.raises(BadPin):
            await pins.verify("u1", "0000")
    await pins.set_pin("u1", "8642")
    assert await pins.verify("u1", "8642")


@pytest.mark.asyncio
async def test_remove_pin(pins):
    await pins.set_pin("u1", "2468")
    await pins.remove_pin("u1", by="admin")
    assert not await pins.has_pin("u1")
    assert (await pins.status("u1"))["has_pin"] is False
    with pytest.raises(NotFound):
        await pins.remove_pin("u1")
    events = await pins.log.list(user_id="admin", action_prefix="pin.remove")
    assert events[0].details == "user=u1"


@pytest.mark.asyncio
async def test_hashing_happens_outside_any_session(pins, session_factory):
    await pins.set_pin("u1", "2468")
    open_sessions = 0
    seen = []

    @asynccontextmanager
    async def tracked():
        nonlocal open_sessions
        async with session_factory() as session:
            open_sessions += 1
            try:
                yield session
            finally:
                open_sessions -= 1

    original = pins._hash

    async def hash_and_check(pin, salt):
        seen.append(open_sessions)
        return await original(pin, salt)

    pins.session_factory = tracked
    pins._hash = hash_and_check
    assert await pins.verify("u1", "2468") is True
    with pytest.raises(BadPin):
        await pins.verify("u1", "0000")
    assert seen == [0, 0]
    assert (await pins.status("u1"))["failed_attempts"] == 1


@pytest.mark.asyncio
async def test_pin_replaced_while_hashing_is_checked_against_new_pin(pins):
    await pins.set_pin("u1", "2468")
    original = pins._hash
    replaced = []

    async def hash_then_replace(pin, salt):
        digest = await original(pin, salt)
        if not replaced:
            replaced.append(True)
            await pins.set_pin("u1", "1357")
        return digest

    pins._hash = hash_then_replace
    assert await pins.verify("u1", "1357") is True
