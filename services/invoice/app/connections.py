"""
Invoice Service — WebSocket コネクションへの送信

コネクションの終端は API Gateway (WebSocket API) が担当している。
このサービスからは Management API 経由で「コネクション ID にバイト列を送る」
「コネクションを閉じる」の 2 つだけを行う。

boto3 は同期クライアントなので、スレッドで実行してイベントループを塞がない。
"""

import asyncio
import json
import logging

from botocore.exceptions import BotoCoreError, ClientError

from services.shared.errors import ConnectionGone, DependencyUnavailable

logger = logging.getLogger(__name__)


def _is_gone(error: ClientError) -> bool:
    code = error.response.get("Error", {}).get("Code")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    return code == "GoneException" or status == 410


class ConnectionPusher:
    def __init__(self, apigw_client) -> None:
        self.client = apigw_client

    async def send_data(self, connection_id: str, data: bytes | str) -> None:
        payload = data.encode("utf-8") if isinstance(data, str) else data
        try:
            await asyncio.to_thread(
                self.client.post_to_connection, ConnectionId=connection_id, Data=payload
            )
        except ClientError as e:
            if _is_gone(e):
                raise ConnectionGone(connection_id)
            logger.error("Failed to post to connection %s: %s", connection_id, e)
            raise DependencyUnavailable("websocket api")
        except BotoCoreError as e:
            logger.error("Failed to post to connection %s: %s", connection_id, e)
            raise DependencyUnavailable("websocket api")

    async def send_json(self, connection_id: str, message: dict) -> None:
        await self.send_data(connection_id, json.dumps(message))

    async def disconnect(self, connection_id: str) -> None:
        try:
            await asyncio.to_thread(self.client.delete_connection, ConnectionId=connection_id)
        except ClientError as e:
            if _is_gone(e):
                raise ConnectionGone(connection_id)
            logger.error("Failed to delete connection %s: %s", connection_id, e)
            raise DependencyUnavailable("websocket api")
        except BotoCoreError as e:
            logger.error("Failed to delete connection %s: %s", connection_id, e)
            raise DependencyUnavailable("websocket api")
