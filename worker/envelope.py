# worker/envelope.py
"""
Đóng gói kết quả task thành 1 binary frame:

    Boundary: <boundary>\\n
    <multipart/form-data body: field "task" (JSON) + field "file" (<uuid>.png)>

Server tìm dòng Boundary đầu tiên, bỏ đi, rồi parse phần còn lại bằng parser multipart thông thường.
"""
import logging
from email import policy
from email.parser import BytesParser
from typing import Tuple

import aiohttp

from .errors import EnvelopeError
from .model import Task

logger = logging.getLogger("relay-worker.envelope")

BOUNDARY_PREFIX = b"Boundary: "


class _BufferWriter:
    """Sink tối thiểu cho MultipartWriter.write(), gom toàn bộ body vào bộ nhớ."""

    def __init__(self) -> None:
        self.buffer = bytearray()

    async def write(self, chunk: bytes) -> None:
        self.buffer.extend(chunk)


async def build_result_envelope(task: Task, image: bytes) -> bytes:
    try:
        form = aiohttp.FormData()
        form.add_field("task", task.to_json(), content_type="application/json")
        form.add_field(
            "file",
            image,
            filename=f"{task.id}.png",
            content_type="application/octet-stream",
        )
        writer = form()

        sink = _BufferWriter()
        await writer.write(sink)
    except (TypeError, ValueError, RuntimeError) as e:
        raise EnvelopeError(f"cannot build result envelope for task {task.id}: {e}") from e

    header = BOUNDARY_PREFIX + writer.boundary.encode("ascii") + b"\n"
    logger.debug(f"Built envelope for task {task.id}: {len(sink.buffer)} bytes body")
    return header + bytes(sink.buffer)


def parse_result_envelope(data: bytes) -> Tuple[bytes, str, bytes]:
    """
    Ngược lại với build_result_envelope: trả về (task_json, filename, image_bytes).
    """
    header, sep, body = data.partition(b"\n")
    if not sep or not header.startswith(BOUNDARY_PREFIX):
        raise EnvelopeError("missing Boundary header line")
    boundary = header[len(BOUNDARY_PREFIX):].strip()
    if not boundary:
        raise EnvelopeError("empty boundary")

    message = BytesParser(policy=policy.HTTP).parsebytes(
        b'Content-Type: multipart/form-data; boundary="' + boundary + b'"\r\n\r\n' + body
    )
    if not message.is_multipart():
        raise EnvelopeError("envelope body is not multipart")

    task_json = None
    filename = None
    image = None
    for part in message.iter_parts():
        name = part.get_param("name", header="content-disposition")
        if name == "task":
            task_json = part.get_payload(decode=True)
        elif name == "file":
            filename = part.get_filename()
            image = part.get_payload(decode=True)

    if task_json is None or image is None or filename is None:
        raise EnvelopeError("envelope must contain both 'task' and 'file' parts")
    return task_json, filename, image
