import asyncio
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from acouchbase.cluster import Cluster as AsyncCluster
from couchbase.auth import PasswordAuthenticator
from couchbase.options import ClusterOptions

VALID_PROTOCOLS = ("couchbase", "couchbases")


@dataclass
class CouchbaseConfig:
    username: str
    password: str
    host: str
    bucket: str
    protocol: str = "couchbase"
    scope: str = "_default"

    def errors(self) -> List[str]:
        errors = []
        if not self.username:
            errors.append("COUCHBASE_USERNAME is missing or empty")
        if not self.password:
            errors.append("COUCHBASE_PASSWORD is missing or empty")
        if not self.host:
            errors.append("COUCHBASE_HOST is missing or empty")
        if not self.bucket:
            errors.append("COUCHBASE_BUCKET is missing or empty")
        if self.protocol not in VALID_PROTOCOLS:
            errors.append(
                f"COUCHBASE_PROTOCOL '{self.protocol}' is invalid. Must be one of {VALID_PROTOCOLS}"
            )
        return errors

    def validate(self) -> None:
        errors = self.errors()
        if errors:
            raise ValueError("Invalid Couchbase Configuration:\n" + "\n".join(errors))

    @property
    def connection_string(self) -> str:
        return f"{self.protocol}://{self.host}"


class ClusterConnection:
    """Lazily connected, cached cluster handle for one configuration."""

    def __init__(self, config: CouchbaseConfig):
        config.validate()
        self.config = config
        self._cluster: Optional[AsyncCluster] = None

    async def get_cluster(
        self, max_retries: int = 10, initial_delay: float = 1.0, max_delay: float = 30.0
    ) -> AsyncCluster:
        """
        Returns a cached Couchbase cluster connection.
        Creates a new connection if one doesn't exist.
        Implements retry with exponential backoff for startup race conditions.
        """
        if self._cluster is None:
            auth = PasswordAuthenticator(self.config.username, self.config.password)
            delay = initial_delay
            cluster = None

            for attempt in range(1, max_retries + 1):
                try:
                    cluster = await AsyncCluster.connect(
                        self.config.connection_string, ClusterOptions(auth)
                    )
                    break
                except Exception:
                    if attempt == max_retries:
                        raise
                    await asyncio.sleep(delay)
                    delay = min(delay * 2, max_delay)

            await cluster.wait_until_ready(timedelta(seconds=50))
            self._cluster = cluster
        return self._cluster

    async def check_connection(self) -> None:
        """
        Explicitly checks the connection to the Couchbase cluster.
        Useful for startup checks.
        """
        cluster = await self.get_cluster()
        await cluster.ping()

    async def close(self) -> None:
        if self._cluster is not None:
            await self._cluster.close()
            self._cluster = None
