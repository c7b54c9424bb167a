"""
Invoice Service — オブジェクトストレージ (S3)

請求書ファイルをアップロードするための署名付き PUT URL を発行する。
URL の署名はローカルで計算されるのでネットワーク呼び出しは発生しない。
"""

import logging

from botocore.exceptions import BotoCoreError, ClientError

from services.shared.errors import DependencyUnavailable

logger = logging.getLogger(__name__)


class InvoiceBucket:
    def __init__(self, s3_client, bucket_name: str) -> None:
        self.s3 = s3_client
        self.bucket_name = bucket_name

    async def issue_write_url(self, key: str, validity_seconds: int) -> str:
        try:
            return self.s3.generate_presigned_url(
                "put_object",
                Params={"Bucket": self.bucket_name, "Key": key},
                ExpiresIn=validity_seconds,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to sign upload URL for %s: %s", key, e)
            raise DependencyUnavailable("invoice bucket")
