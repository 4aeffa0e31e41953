"""boto3 session and client pool for the SSM transport."""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError

from daycycle.config.models import RemoteConfig
from daycycle.utils.logging import get_logger
from daycycle.utils.retry import error_code, with_retry

logger = get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Who the configured credentials authenticate as."""
    account_id: str
    arn: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """One boto3 session per process, with clients shared by worker threads.

    Sessions are not thread safe but clients are, so clients are created
    under a lock and then handed out freely.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_pool_connections: int = 50,
        max_attempts: int = 5
    ):
        """Initialize AWS client manager.

        Args:
            profile: Named profile, or None for the default credential chain
            region: Region, or None for the profile's region
            max_pool_connections: HTTP connections per client
            max_attempts: botocore's own adaptive retry attempts per call
        """
        self.profile = profile
        self.region = region
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._identity: Optional[CallerIdentity] = None
        self._lock = threading.Lock()
        self._boto_config = Config(
            max_pool_connections=max_pool_connections,
            retries={'mode': 'adaptive', 'max_attempts': max_attempts},
            connect_timeout=10,
            read_timeout=60,
        )

    @classmethod
    def from_remote_config(cls, remote: RemoteConfig) -> "AWSClientManager":
        return cls(profile=remote.profile, region=remote.region)

    @property
    def session(self) -> boto3.Session:
        if self._session is None:
            self._session = boto3.Session(profile_name=self.profile, region_name=self.region)
            logger.info(
                f"AWS session in {self._session.region_name} "
                f"using profile {self.profile or 'default'}"
            )
        return self._session

    def get_client(self, service_name: str):
        """Pooled client for an AWS service such as 'ssm' or 'sts'."""
        with self._lock:
            client = self._clients.get(service_name)
            if client is None:
                client = self.session.client(service_name, config=self._boto_config)
                self._clients[service_name] = client
            return client

    @with_retry(max_retries=3, base_delay=0.5)
    def _caller_identity(self) -> Dict[str, Any]:
        return self.get_client('sts').get_caller_identity()

    def validate_credentials(self) -> CallerIdentity:
        """Resolve the caller identity once and cache it.

        Returns:
            The account and principal the credentials belong to

        Raises:
            NoCredentialsError: If no credentials are configured
            ClientError: If STS rejects the credentials
        """
        if self._identity is not None:
            return self._identity

        try:
            response = self._caller_identity()
        except NoCredentialsError:
            logger.error("No AWS credentials found in the environment, profile or instance role")
            raise
        except ClientError as e:
            if error_code(e) in ('InvalidClientTokenId', 'ExpiredToken'):
                logger.error("AWS credentials are invalid or expired")
            else:
                logger.error(f"Credential check failed: {e}")
            raise

        self._identity = CallerIdentity(
            account_id=response['Account'],
            arn=response['Arn'],
            region=self.session.region_name,
            profile=self.profile,
        )
        logger.info(f"Running as {self._identity.arn} in {self._identity.region}")
        return self._identity
