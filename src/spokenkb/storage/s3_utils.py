"""
S3 artifact store for S3-compatible storage (AWS S3, MinIO).
"""
from typing import Dict, Any
import io
import os
import boto3
from boto3.s3.transfer import TransferConfig
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from spokenkb.utils.error_codes import ArtifactMissing, ErrorCode, TransientIO
from spokenkb.utils.logger import setup_worker_logger
from .artifact_keys import compute_checksum

logger = setup_worker_logger('s3_utils')

_MISSING_CODES = {'404', 'NoSuchKey', 'NotFound'}


class S3StorageConfig:
    """Configuration for S3 storage"""
    def __init__(
        self,
        endpoint_url: str = None,
        access_key: str = None,
        secret_key: str = None,
        bucket_name: str = None,
        use_ssl: bool = None,
        multipart_threshold_mb: int = 16,
        max_attempts: int = 5,
        connect_timeout: int = 5,
        read_timeout: int = 30
    ):
        """Initialize S3 storage configuration"""
        self.endpoint_url = endpoint_url or os.environ.get('S3_ENDPOINT') or None
        self.access_key = access_key or os.environ.get('S3_ACCESS_KEY')
        self.secret_key = secret_key or os.environ.get('S3_SECRET_KEY')
        self.bucket_name = bucket_name or os.environ.get('S3_BUCKET')
        self.use_ssl = use_ssl if use_ssl is not None else os.environ.get('S3_USE_SSL', 'false').lower() == 'true'
        self.multipart_threshold_mb = multipart_threshold_mb
        self.max_attempts = max_attempts
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout

        if not self.bucket_name:
            raise ValueError("Missing required S3 configuration: bucket_name")

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> 'S3StorageConfig':
        """Create S3StorageConfig instance from the storage.s3 config section"""
        return cls(
            endpoint_url=config_dict.get('endpoint_url'),
            access_key=config_dict.get('access_key'),
            secret_key=config_dict.get('secret_key'),
            bucket_name=config_dict.get('bucket_name'),
            use_ssl=config_dict.get('use_ssl', False),
            multipart_threshold_mb=config_dict.get('multipart_threshold_mb', 16),
            max_attempts=config_dict.get('max_attempts', 5),
            connect_timeout=config_dict.get('connect_timeout', 5),
            read_timeout=config_dict.get('read_timeout', 30),
        )


class S3ArtifactStore:
    """
    ArtifactStore backed by an S3 bucket.

    Uploads go through boto3's managed transfer, so blobs above the multipart
    threshold are sent as independently retried parts. botocore retries each
    request up to max_attempts; anything still failing surfaces as TransientIO
    for the orchestrator's backoff to handle.
    """

    def __init__(self, config: S3StorageConfig, client=None):
        self.config = config
        self._client = client or self._create_client()
        self._transfer_config = TransferConfig(
            multipart_threshold=config.multipart_threshold_mb * 1024 * 1024,
            multipart_chunksize=config.multipart_threshold_mb * 1024 * 1024,
        )

    def _create_client(self):
        logger.info(f"Initializing S3 client with endpoint: {self.config.endpoint_url or 'aws default'}")
        client_config = Config(
            signature_version='s3v4',
            connect_timeout=self.config.connect_timeout,
            read_timeout=self.config.read_timeout,
            retries={'max_attempts': self.config.max_attempts, 'mode': 'standard'}
        )
        return boto3.client(
            's3',
            endpoint_url=self.config.endpoint_url,
            aws_access_key_id=self.config.access_key,
            aws_secret_access_key=self.config.secret_key,
            use_ssl=self.config.use_ssl,
            config=client_config,
        )

    @staticmethod
    def _error_code(error: ClientError) -> str:
        return str(error.response.get('Error', {}).get('Code', ''))

    def put(self, key: str, data: bytes) -> str:
        """Upload bytes and return their sha256. The digest is also kept as object metadata."""
        checksum = compute_checksum(data)
        try:
            self._client.upload_fileobj(
                io.BytesIO(data),
                self.config.bucket_name,
                key,
                ExtraArgs={'Metadata': {'sha256': checksum}},
                Config=self._transfer_config,
            )
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Upload of {key} ({len(data)} bytes) failed: {str(e)}")
            raise TransientIO(f"S3 upload failed for {key}: {e}", error_code=ErrorCode.STORAGE_ERROR)
        logger.info(f"Uploaded {key} ({len(data)} bytes, sha256 {checksum[:12]})")
        return checksum

    def get(self, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.config.bucket_name, Key=key)
            return response['Body'].read()
        except ClientError as e:
            if self._error_code(e) in _MISSING_CODES:
                raise ArtifactMissing(f"Artifact {key} not found in bucket {self.config.bucket_name}")
            raise TransientIO(f"S3 download failed for {key}: {e}", error_code=ErrorCode.STORAGE_ERROR)
        except BotoCoreError as e:
            raise TransientIO(f"S3 download failed for {key}: {e}", error_code=ErrorCode.NETWORK_ERROR)

    def exists(self, key: str) -> bool:
        try:
            self._client.head_object(Bucket=self.config.bucket_name, Key=key)
            return True
        except ClientError as e:
            if self._error_code(e) in _MISSING_CODES:
                return False
            raise TransientIO(f"S3 head failed for {key}: {e}", error_code=ErrorCode.STORAGE_ERROR)
        except BotoCoreError as e:
            raise TransientIO(f"S3 head failed for {key}: {e}", error_code=ErrorCode.NETWORK_ERROR)

    def check_connection(self) -> bool:
        """Cheap bucket-level health check"""
        try:
            self._client.head_bucket(Bucket=self.config.bucket_name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.error(f"S3 bucket {self.config.bucket_name} unreachable: {str(e)}")
            return False
