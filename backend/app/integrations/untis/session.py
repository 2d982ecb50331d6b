"""Opening authenticated WebUntis sessions from stored user credentials."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from app.core.config import settings
from app.core.crypto import CredentialCipher
from app.integrations.untis.client import UntisClient, WebUntisClient

logger = logging.getLogger(__name__)

# (school, username, password) -> client
ClientFactory = Callable[[str, str, str], UntisClient]


class UntisSessionFactory:
    """Decrypts a user's secret and yields a logged-in client."""

    def __init__(self, cipher: CredentialCipher, client_factory: ClientFactory = WebUntisClient, school: str = None):
        self.cipher = cipher
        self.client_factory = client_factory
        self.school = school if school is not None else settings.UNTIS_DEFAULT_SCHOOL

    @asynccontextmanager
    async def open(self, user) -> AsyncIterator[UntisClient]:
        password = self.cipher.decrypt(
            user.untis_secret_ciphertext,
            user.untis_secret_nonce,
            user.untis_secret_key_version or 1,
        )
        client = self.client_factory(self.school, user.username, password)
        try:
            await client.login()
        except Exception:
            await client.close()
            raise

        try:
            yield client
        finally:
            try:
                await client.logout()
            except Exception as e:
                logger.debug(f"WebUntis logout failed for {user.username}: {e}")
