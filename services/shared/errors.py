"""
共通 — エラー分類 (Error Taxonomy)

各サービスが返すドメインエラーは閉じた列挙 ErrorKind で分類する。
コラボレーター(DB / Redis / HTTP / AWS)の例外はアダプター境界で
DependencyUnavailable に変換し、呼び出し側に生の例外を漏らさない。

HTTP 層では register_error_handlers() が ErrorKind をステータスコードに
変換し、{"error": ..., "message": ...} の形で返す。
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, TypeVar

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    DEPENDENCY_UNAVAILABLE = "DEPENDENCY_UNAVAILABLE"
    DECODE_ERROR = "DECODE_ERROR"
    CONNECTION_GONE = "CONNECTION_GONE"
    BAD_REQUEST = "BAD_REQUEST"


STATUS_CODES = {
    ErrorKind.VALIDATION_FAILED: 404,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.DEPENDENCY_UNAVAILABLE: 503,
    ErrorKind.DECODE_ERROR: 400,
    ErrorKind.CONNECTION_GONE: 410,
    ErrorKind.BAD_REQUEST: 400,
}


class ServiceError(Exception):
    """すべてのドメインエラーの基底クラス。"""

    kind: ErrorKind

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.kind.value, "message": self.message}


class ValidationFailed(ServiceError):
    """リクエストが現在のデータと整合しない(未知の商品コードなど)"""

    kind = ErrorKind.VALIDATION_FAILED

    def __init__(self, message: str, missing_codes: list[str] | None = None) -> None:
        super().__init__(message)
        self.missing_codes = missing_codes or []


class NotFound(ServiceError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, message: str, identity: dict | None = None) -> None:
        super().__init__(message)
        self.identity = identity or {}


class DependencyUnavailable(ServiceError):
    """ストア・メッセージング・外部 API の呼び出し失敗"""

    kind = ErrorKind.DEPENDENCY_UNAVAILABLE

    def __init__(self, dependency: str, message: str | None = None) -> None:
        super().__init__(message or f"{dependency} is unavailable")
        self.dependency = dependency


class DecodeError(ServiceError):
    kind = ErrorKind.DECODE_ERROR

    def __init__(self, message: str, event_type: str | None = None) -> None:
        super().__init__(message)
        self.event_type = event_type


class ConnectionGone(ServiceError):
    """クライアントのコネクションが既に閉じている"""

    kind = ErrorKind.CONNECTION_GONE

    def __init__(self, connection_id: str) -> None:
        super().__init__(f"Connection {connection_id} is gone")
        self.connection_id = connection_id


class BadRequest(ServiceError):
    """クエリパラメータの組み合わせが不正"""

    kind = ErrorKind.BAD_REQUEST


async def with_deadline(coro: Awaitable[T], seconds: float, operation: str) -> T:
    """
    1 回の呼び出し(インボケーション)に期限を設ける。
    期限切れはコラボレーター障害として扱う。
    """
    try:
        return await asyncio.wait_for(coro, timeout=seconds)
    except asyncio.TimeoutError:
        logger.error("Operation %s exceeded %.1fs deadline", operation, seconds)
        raise DependencyUnavailable(operation, f"{operation} timed out")


def register_error_handlers(app: FastAPI) -> None:
    """ServiceError を構造化されたレスポンスに変換するハンドラを登録する。"""

    @app.exception_handler(ServiceError)
    async def _handle_service_error(request: Request, exc: ServiceError):
        status = STATUS_CODES[exc.kind]
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        else:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=exc.to_dict())
