"""
Lark / Feishu platform adapter

Implements ChatPlatform on top of the lark-oapi SDK. The SDK client is
synchronous, so every call runs in the default executor to keep the event
loop free.
"""

import asyncio
import io
import json
from typing import Any, Callable, Optional, TypeVar

import lark_oapi as lark
from lark_oapi.api.im.v1 import (
    CreateImageRequest,
    CreateImageRequestBody,
    CreateMessageRequest,
    CreateMessageRequestBody,
    DeleteMessageRequest,
    GetMessageResourceRequest,
    PatchMessageRequest,
    PatchMessageRequestBody,
)

from logger import get_logger

from core.bridge.platform import PlatformError

logger = get_logger("bridge.lark_client")

T = TypeVar("T")

_DOMAINS = {
    "lark": lark.LARK_DOMAIN,
    "feishu": lark.FEISHU_DOMAIN,
}


class LarkPlatform:
    """
    Lark messaging API.

    Args:
        app_id: platform App ID
        app_secret: platform App Secret
        domain: "lark" (larksuite.com) or "feishu" (feishu.cn)
    """

    def __init__(self, app_id: str, app_secret: str, domain: str = "lark") -> None:
        self._client = lark.Client.builder() \
            .app_id(app_id) \
            .app_secret(app_secret) \
            .domain(_DOMAINS[domain]) \
            .log_level(lark.LogLevel.WARNING) \
            .build()

    async def _call(self, operation: str, fn: Callable[[], T]) -> T:
        response: Any = await asyncio.get_running_loop().run_in_executor(None, fn)
        if not response.success():
            logger.error(
                "Lark API call failed",
                extra={"operation": operation, "code": response.code, "error_msg": response.msg},
            )
            raise PlatformError(operation, response.code, response.msg)
        return response

    async def _create_message(self, chat_id: str, msg_type: str, content: dict) -> Optional[str]:
        request = CreateMessageRequest.builder() \
            .receive_id_type("chat_id") \
            .request_body(
                CreateMessageRequestBody.builder()
                .receive_id(chat_id)
                .msg_type(msg_type)
                .content(json.dumps(content, ensure_ascii=False))
                .build()
            ).build()

        response = await self._call(
            "message.create",
            lambda: self._client.im.v1.message.create(request),
        )
        data = getattr(response, "data", None)
        return getattr(data, "message_id", None)

    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        return await self._create_message(chat_id, "text", {"text": text})

    async def send_image(self, chat_id: str, image_key: str) -> Optional[str]:
        message_id = await self._create_message(chat_id, "image", {"image_key": image_key})
        logger.info("Image sent", extra={"chat_id": chat_id, "image_key": image_key})
        return message_id

    async def edit_text(self, message_id: str, text: str) -> None:
        request = PatchMessageRequest.builder() \
            .message_id(message_id) \
            .request_body(
                PatchMessageRequestBody.builder()
                .content(json.dumps({"text": text}, ensure_ascii=False))
                .build()
            ).build()

        await self._call("message.patch", lambda: self._client.im.v1.message.patch(request))

    async def delete_message(self, message_id: str) -> None:
        request = DeleteMessageRequest.builder().message_id(message_id).build()
        await self._call("message.delete", lambda: self._client.im.v1.message.delete(request))

    async def fetch_resource(self, message_id: str, file_key: str, resource_type: str = "image") -> bytes:
        request = GetMessageResourceRequest.builder() \
            .message_id(message_id) \
            .file_key(file_key) \
            .type(resource_type) \
            .build()

        response = await self._call(
            "message_resource.get",
            lambda: self._client.im.v1.message_resource.get(request),
        )
        file_obj = getattr(response, "file", None)
        if file_obj is None:
            raise PlatformError("message_resource.get", msg="response carried no file")
        return file_obj.read()

    async def upload_image(self, data: bytes) -> str:
        request = CreateImageRequest.builder() \
            .request_body(
                CreateImageRequestBody.builder()
                .image_type("message")
                .image(io.BytesIO(data))
                .build()
            ).build()

        response = await self._call("image.create", lambda: self._client.im.v1.image.create(request))
        image_key = getattr(getattr(response, "data", None), "image_key", None)
        if not image_key:
            raise PlatformError("image.create", msg="response carried no image_key")
        logger.info("Image uploaded", extra={"image_key": image_key})
        return image_key
