# worker/session.py
"""
Một phiên kết nối websocket tới orchestration server:

    dial -> auth -> gửi models_update -> (ping loop chạy nền) -> vòng đọc message

run() luôn kết thúc bằng một SessionError; ReconnectSupervisor sẽ kết nối lại.
Mỗi lần chỉ xử lý 1 task, vòng đọc đợi task xong mới đọc frame tiếp theo.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence

import aiohttp
from aiohttp import WSMsgType
from pydantic import ValidationError

from config.settings import ModelConfig, ServerConfig

from .envelope import build_result_envelope
from .errors import (
    AdvertiseFailure,
    AuthFailure,
    BackendError,
    ConnectionClosed,
    DialFailure,
    EnvelopeError,
    ProtocolError,
    SessionError,
    TaskDecodeError,
    TaskValidationError,
    TransmitError,
)
from .model import (
    MSG_AUTH,
    MSG_AUTH_SUCCESS,
    MSG_GET_MODELS,
    MSG_MODELS_UPDATE,
    MSG_TASK,
    MSG_TASK_UPDATE,
    AdvertisedModel,
    AuthRequest,
    AuthSuccess,
    ControlMessage,
    Task,
    TaskStatus,
    TaskType,
    advertised_models_adapter,
)

logger = logging.getLogger("relay-worker.session")

_CLOSE_TYPES = (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED)
_WRITE_ERRORS = (aiohttp.ClientError, OSError, RuntimeError, asyncio.TimeoutError)


class ImageGenerator(Protocol):
    async def generate_image(self, prompt: str, model_selector: int) -> bytes:
        ...


Connector = Callable[[], Awaitable[Any]]


class ConnectionSession:
    def __init__(
        self,
        server: ServerConfig,
        models: Sequence[ModelConfig],
        invoker: ImageGenerator,
        connector: Optional[Connector] = None,
    ):
        self.server = server
        self.models = list(models)
        self.invoker = invoker
        self._connector = connector or self._dial
        self._http: Optional[aiohttp.ClientSession] = None
        self._write_lock = asyncio.Lock()

        # chỉ dùng để ghi nhận, kênh websocket đã được xác thực
        self.token: Optional[str] = None
        self.server_models: List[AdvertisedModel] = []

    async def run(self) -> None:
        ws = await self._connector()
        ping_task: Optional[asyncio.Task] = None
        try:
            await self._authenticate(ws)
            await self._advertise_models(ws)

            if self.server.request_models_on_connect:
                try:
                    await self.request_models(ws)
                except TransmitError as e:
                    logger.warning(f"Failed to request models: {e}")

            ping_task = asyncio.create_task(self._ping_loop(ws))
            await self._handle_messages(ws)
        finally:
            try:
                if ping_task is not None:
                    ping_task.cancel()
                    # chỉ ném CancelledError khi chính run() bị cancel
                    await asyncio.wait([ping_task])
            finally:
                await self._close(ws)

    # --- connection ---

    async def _dial(self) -> aiohttp.ClientWebSocketResponse:
        url = self.server.ws_url
        http = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=None, connect=self.server.dial_timeout)
        )
        try:
            ws = await http.ws_connect(url, ssl=self.server.verify_tls, autoping=True)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await http.close()
            raise DialFailure(f"dial {url} failed: {e}") from e

        self._http = http
        logger.info(f"Connected to {url}")
        return ws

    async def _close(self, ws: Any) -> None:
        try:
            await ws.close()
        finally:
            if self._http is not None:
                await self._http.close()
                self._http = None

    async def _write(self, ws: Any, data: str | bytes) -> None:
        async with self._write_lock:
            try:
                if isinstance(data, bytes):
                    await asyncio.wait_for(ws.send_bytes(data), timeout=self.server.write_timeout)
                else:
                    await asyncio.wait_for(ws.send_str(data), timeout=self.server.write_timeout)
            except _WRITE_ERRORS as e:
                raise TransmitError(f"write failed: {e!r}") from e

    async def _send_message(self, ws: Any, msg_type: str, payload: Any = None) -> None:
        message = ControlMessage(type=msg_type, payload=payload)
        await self._write(ws, message.model_dump_json())

    async def _read_message(self, ws: Any) -> ControlMessage:
        msg = await ws.receive()

        if msg.type in _CLOSE_TYPES:
            raise ConnectionClosed(f"connection closed (code={ws.close_code})")
        if msg.type == WSMsgType.ERROR:
            raise ConnectionClosed(f"connection error: {ws.exception()!r}")
        if msg.type not in (WSMsgType.TEXT, WSMsgType.BINARY):
            raise ProtocolError(f"unexpected frame type {msg.type!r}")

        try:
            return ControlMessage.model_validate_json(msg.data)
        except ValidationError as e:
            raise ProtocolError(f"malformed control message: {e}") from e

    # --- handshake ---

    async def _authenticate(self, ws: Any) -> None:
        request = AuthRequest(password=self.server.passcode)
        try:
            await self._send_message(ws, MSG_AUTH, request.model_dump())
            response = await self._read_message(ws)
        except (TransmitError, SessionError) as e:
            raise AuthFailure(f"authentication error: {e}") from e

        if response.type != MSG_AUTH_SUCCESS:
            raise AuthFailure(f"auth failed, server replied {response.type!r}")

        try:
            auth = AuthSuccess.model_validate(response.payload)
        except ValidationError as e:
            raise AuthFailure("auth_success reply has no token") from e

        self.token = auth.token
        logger.info("Authenticated with orchestration server")

    def available_models(self) -> List[Dict[str, Any]]:
        return [{"id": i, "name": m.name} for i, m in enumerate(self.models, start=1)]

    async def _advertise_models(self, ws: Any) -> None:
        models = self.available_models()
        try:
            await self._send_message(ws, MSG_MODELS_UPDATE, models)
        except TransmitError as e:
            raise AdvertiseFailure(f"models send error: {e}") from e
        logger.info(f"Advertised {len(models)} model(s)")

    async def request_models(self, ws: Any) -> None:
        """Hỏi server danh sách model nó đang biết; server trả lời bằng models_update."""
        await self._send_message(ws, MSG_GET_MODELS)

    # --- keepalive ---

    async def _ping_loop(self, ws: Any) -> None:
        while True:
            await asyncio.sleep(self.server.ping_interval)
            try:
                async with self._write_lock:
                    await asyncio.wait_for(ws.ping(), timeout=self.server.write_timeout)
            except _WRITE_ERRORS as e:
                # connection đã chết, vòng đọc sẽ tự phát hiện
                logger.debug(f"Ping failed, stopping keepalive: {e!r}")
                return

    # --- dispatch ---

    async def _handle_messages(self, ws: Any) -> None:
        while True:
            message = await self._read_message(ws)

            if message.type == MSG_TASK:
                try:
                    task = Task.from_payload(message.payload)
                except TaskDecodeError as e:
                    logger.error(f"Failed to unmarshal task: {e}")
                    continue
                await self.handle_task(ws, task)

            elif message.type == MSG_MODELS_UPDATE:
                try:
                    models = advertised_models_adapter.validate_python(message.payload)
                except ValidationError as e:
                    logger.error(f"Failed to unmarshal models: {e}")
                    continue
                self.server_models = models
                logger.info(f"Models updated, count={len(models)}")

            else:
                logger.warning(f"Unknown message type: {message.type!r}")

    async def handle_task(self, ws: Any, task: Task) -> None:
        try:
            task.ensure_valid()
        except TaskValidationError as e:
            logger.error(f"Invalid task received: {e}")
            return

        if task.kind == TaskType.TTI:
            await self._handle_tti_task(ws, task)
        else:
            # LLM / RECON: chưa hỗ trợ
            logger.debug(f"Task {task.id}: type {task.kind.value} not handled, ignoring")

    async def _handle_tti_task(self, ws: Any, task: Task) -> None:
        task.update_status(TaskStatus.PROCESSING)
        await self._send_task_update(ws, task)

        if not 1 <= task.model_selector <= len(self.models):
            logger.error(
                f"Task {task.id}: model {task.model_selector} out of range "
                f"(1..{len(self.models)})"
            )
            task.update_status(TaskStatus.FAILED)
            await self._send_task_update(ws, task)
            return

        logger.info(f"Processing task {task.id}, model={task.model_selector}, prompt={task.prompt[:50]}...")
        try:
            image = await self.invoker.generate_image(task.prompt, task.model_selector)
        except BackendError as e:
            logger.error(f"Task {task.id} failed: {e}")
            task.update_status(TaskStatus.FAILED)
            await self._send_task_update(ws, task)
            return

        # status vẫn là PROCESSING khi gửi kết quả, server tự chuyển sang COMPLETED
        try:
            await self._send_task_result(ws, task, image)
        except (EnvelopeError, TransmitError) as e:
            logger.error(f"Failed to send task result for {task.id}: {e}")
            return
        logger.info(f"Task {task.id} result sent ({len(image)} bytes)")

    async def _send_task_update(self, ws: Any, task: Task) -> None:
        try:
            payload = task.to_wire()
        except ValueError as e:
            logger.critical(f"Cannot encode task {task.id} for task_update: {e}")
            return
        try:
            await self._send_message(ws, MSG_TASK_UPDATE, payload)
        except TransmitError as e:
            logger.error(f"Failed to send task update for {task.id}: {e}")

    async def _send_task_result(self, ws: Any, task: Task, image: bytes) -> None:
        envelope = await build_result_envelope(task, image)
        await self._write(ws, envelope)
