"""Password hashing and verification with bcrypt."""
import bcrypt
from fastapi.concurrency import run_in_threadpool

# bcrypt only looks at the first 72 bytes of input.
BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


class PasswordHasher:
    """
    Salted, adaptive password hashing with a fixed cost factor.

    `dummy_verify` checks against a hash of the same cost so that a login
    for an unknown username takes as long as one with a wrong password.
    """

    def __init__(self, rounds: int = 12):
        self.rounds = rounds
        self._dummy_hash = bcrypt.hashpw(b"lunasphere-dummy-password", bcrypt.gensalt(rounds=rounds))

    def hash_sync(self, password: str) -> str:
        return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify_sync(self, password: str, hashed: str) -> bool:
        try:
            return bcrypt.checkpw(_encode(password), hashed.encode("utf-8"))
        except (ValueError, TypeError):
            return False

    async def hash(self, password: str) -> str:
        """Hash a password off the event loop."""
        return await run_in_threadpool(self.hash_sync, password)

    async def verify(self, password: str, hashed: str) -> bool:
        """Verify a password against a stored hash off the event loop."""
        return await run_in_threadpool(self.verify_sync, password, hashed)

    async def dummy_verify(self, password: str) -> bool:
        await run_in_threadpool(bcrypt.checkpw, _encode(password), self._dummy_hash)
        return False
