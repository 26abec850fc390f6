"""Transaction PINs with lockout.

PINs are 4 to 8 digits, stored as scrypt(pin, salt). Every verification, set,
change and removal leaves a row in the security log.
"""
import asyncio
import hashlib
import hmac
import re
import secrets
from datetime import timedelta
from typing import Optional
from sqlalchemy.ext.asyncio import async_sessionmaker

from oae.core.clock import Clock, as_utc, utcnow
from oae.core.errors import BadPin, InvalidInput, Locked, NotFound
from oae.database import transaction
from oae.models.security import TransactionPin
from oae.services.security_log import SecurityLog

PIN_RE = re.compile(r"^\d{4,8}$")
SCRYPT_N = 2 ** 14
SCRYPT_R = 8
SCRYPT_P = 1


def hash_pin(pin: str, salt: bytes, n: int = SCRYPT_N) -> str:
    return hashlib.scrypt(pin.encode(), salt=salt, n=n, r=SCRYPT_R, p=SCRYPT_P, dklen=32).hex()


class PinService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        security_log: SecurityLog,
        max_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=15),
        clock: Clock = utcnow,
        scrypt_n: int = SCRYPT_N,
    ):
        self.session_factory = session_factory
        self.log = security_log
        self.max_attempts = max_attempts
        self.lockout = lockout
        self.clock = clock
        self.scrypt_n = scrypt_n

    async def _hash(self, pin: str, salt: bytes) -> str:
        return await asyncio.to_thread(hash_pin, pin, salt, self.scrypt_n)

    async def set_pin(self, user_id, pin: str) -> None:
        user_id = str(user_id)
        if not isinstance(pin, str) or not PIN_RE.match(pin):
            raise InvalidInput("PIN must be 4-8 digits")
        salt = secrets.token_bytes(16)
        pin_hash = await self._hash(pin, salt)
        async with transaction(self.session_factory) as db:
            row = await db.get(TransactionPin, user_id, with_for_update=True)
            if row is None:
                db.add(TransactionPin(user_id=user_id, pin_hash=pin_hash, salt=salt.hex(), created_at=self.clock()))
                ev = self.log.add(db, user_id, "pin.create", True)
            else:
                row.pin_hash = pin_hash
                row.salt = salt.hex()
                row.created_at = self.clock()
                row.failed_attempts = 0
                row.locked_until = None
                ev = self.log.add(db, user_id, "pin.update", True)
        await self.log.publish(ev)

    async def change_pin(self, user_id, old_pin: str, new_pin: str) -> None:
        if not isinstance(new_pin, str) or not PIN_RE.match(new_pin):
            raise InvalidInput("PIN must be 4-8 digits")
        await self.verify(user_id, old_pin)
        await self.set_pin(user_id, new_pin)

    async def verify(self, user_id, candidate: str) -> bool:
        """Check ``candidate`` against the stored PIN.

        Raises Locked while a lockout is running, BadPin on mismatch (locking
        the PIN once ``max_attempts`` is reached) and NotFound if no PIN is set.
        The hash is computed outside any transaction; the attempt counter is
        then updated under a row lock and committed before the error propagates.
        """
        user_id = str(user_id)
        async with transaction(self.session_factory) as db:
            row = await db.get(TransactionPin, user_id)
            stored = (row.salt, row.pin_hash, as_utc(row.locked_until)) if row is not None else None
        if stored is None:
            await self.log.record(user_id, "pin.verify", False, "no_pin")
            raise NotFound("no PIN set")
        salt, pin_hash, locked_until = stored
        if locked_until and locked_until > self.clock():
            await self.log.record(user_id, "pin.verify", False, "locked_out")
            raise Locked(f"PIN locked until {locked_until.isoformat()}", locked_until=locked_until)

        candidate_hash = await self._hash(str(candidate or ""), bytes.fromhex(salt))
        matched = hmac.compare_digest(candidate_hash, pin_hash)

        now = self.clock()
        failure = None
        retry = False
        events = []
        async with transaction(self.session_factory) as db:
            row = await db.get(TransactionPin, user_id, with_for_update=True, populate_existing=True)
            if row is None:
                events.append(self.log.add(db, user_id, "pin.verify", False, "no_pin"))
                failure = NotFound("no PIN set")
            elif row.pin_hash != pin_hash:
                # replaced while hashing; check against the new one
                retry = True
            else:
                locked_until = as_utc(row.locked_until)
                if locked_until and locked_until > now:
                    events.append(self.log.add(db, user_id, "pin.verify", False, "locked_out"))
                    failure = Locked(f"PIN locked until {locked_until.isoformat()}", locked_until=locked_until)
                else:
                    if locked_until:
                        # lockout served
                        row.failed_attempts = 0
                        row.locked_until = None
                    if matched:
                        row.failed_attempts = 0
                        row.last_used_at = now
                        events.append(self.log.add(db, user_id, "pin.verify", True))
                    else:
                        row.failed_attempts += 1
                        events.append(self.log.add(
                            db, user_id, "pin.verify", False,
                            f"bad_pin {row.failed_attempts}/{self.max_attempts}",
                        ))
                        if row.failed_attempts >= self.max_attempts:
                            row.locked_until = now + self.lockout
                            events.append(self.log.add(db, user_id, "pin.lock", False, "locked"))
                        failure = BadPin("incorrect PIN", attempts=row.failed_attempts)
        if retry:
            return await self.verify(user_id, candidate)
        await self.log.publish(*events)
        if failure:
            raise failure
        return True

    async def has_pin(self, user_id) -> bool:
        async with transaction(self.session_factory) as db:
            return await db.get(TransactionPin, str(user_id)) is not None

    async def remove_pin(self, user_id, by: Optional[str] = None) -> None:
        async with transaction(self.session_factory) as db:
            row = await db.get(TransactionPin, str(user_id))
            if row is None:
                raise NotFound("no PIN set")
            await db.delete(row)
            ev = self.log.add(db, by or user_id, "pin.remove", True, f"user={user_id}")
        await self.log.publish(ev)

    async def status(self, user_id) -> dict:
        async with transaction(self.session_factory) as db:
            row = await db.get(TransactionPin, str(user_id))
        if row is None:
            return {"has_pin": False, "created_at": None, "last_used_at": None,
                    "failed_attempts": 0, "locked_until": None}
        locked_until = as_utc(row.locked_until)
        return {
            "has_pin": True,
            "created_at": as_utc(row.created_at),
            "last_used_at": as_utc(row.last_used_at),
            "failed_attempts": row.failed_attempts,
            "locked_until": locked_until if locked_until and locked_until > self.clock() else None,
        }
