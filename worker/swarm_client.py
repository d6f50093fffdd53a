# worker/swarm_client.py
import logging
from typing import Any, Dict, Optional, Sequence

import httpx

from config.settings import ApiConfig, ModelConfig

from .errors import BackendError

logger = logging.getLogger("relay-worker.swarm")


def build_generate_body(session_id: str, prompt: str, model: ModelConfig) -> Dict[str, Any]:
    """
    Tạo body cho /API/GenerateText2Image từ config của model.
    Option tự do trong config được copy nguyên, ghi đè key trùng.
    """
    if model.prompt_suffix:
        prompt = f"{prompt}{model.prompt_suffix}"

    body: Dict[str, Any] = {
        "session_id": session_id,
        "images": 1,
        "prompt": prompt,
        "model": model.string_id,
        "width": model.width,
        "height": model.height,
        "steps": model.steps,
        "cfgscale": model.cfgscale,
    }
    if model.loras:
        body["loras"] = model.loras
    if model.loraweights:
        body["loraweights"] = model.loraweights

    body.update(model.options)
    return body


class SwarmClient:
    """
    Client cho API sinh ảnh local: lấy session -> generate -> tải ảnh về (bytes).
    """

    def __init__(
        self,
        api: ApiConfig,
        models: Sequence[ModelConfig],
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api = api
        self.models = list(models)
        self.transport = transport

    def model_for(self, model_selector: int) -> ModelConfig:
        # model_selector đánh số từ 1
        if not 1 <= model_selector <= len(self.models):
            raise BackendError(
                f"model {model_selector} out of range, {len(self.models)} model(s) configured"
            )
        return self.models[model_selector - 1]

    async def generate_image(self, prompt: str, model_selector: int) -> bytes:
        model = self.model_for(model_selector)

        try:
            async with httpx.AsyncClient(
                base_url=self.api.base_url,
                timeout=self.api.timeout_seconds,
                transport=self.transport,
            ) as client:
                session_id = await self._get_new_session(client)
                image_path = await self._generate_text2image(client, session_id, prompt, model)
                return await self._download_image(client, image_path)
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise BackendError(f"image API request failed: {e}") from e

    async def _get_new_session(self, client: httpx.AsyncClient) -> str:
        r = await client.post("/API/GetNewSession", json={})
        r.raise_for_status()
        data = _json_object(r)
        session_id = data.get("session_id")
        if not session_id:
            raise BackendError(f"API did not return session_id: {data}")
        return session_id

    async def _generate_text2image(
        self,
        client: httpx.AsyncClient,
        session_id: str,
        prompt: str,
        model: ModelConfig,
    ) -> str:
        body = build_generate_body(session_id, prompt, model)
        logger.info(f"Generating image with model {model.name!r} ({model.string_id})")

        r = await client.post("/API/GenerateText2Image", json=body)
        if r.status_code != 200:
            logger.error(f"GenerateText2Image returned {r.status_code}: {r.text[:500]}")
        r.raise_for_status()

        images = _json_object(r).get("images") or []
        if not isinstance(images, list):
            raise BackendError(f"unexpected images field in response: {images!r}")
        if not images:
            raise BackendError("no images returned from response")
        if not isinstance(images[0], str) or not images[0]:
            raise BackendError(f"unexpected image path in response: {images[0]!r}")
        return images[0]

    async def _download_image(self, client: httpx.AsyncClient, image_path: str) -> bytes:
        r = await client.get(image_path if "://" in image_path else "/" + image_path.lstrip("/"))
        r.raise_for_status()
        logger.debug(f"Downloaded {len(r.content)} bytes from {image_path}")
        return r.content


def _json_object(r: httpx.Response) -> Dict[str, Any]:
    try:
        data = r.json()
    except ValueError as e:
        raise BackendError(f"malformed JSON from {r.request.url}: {e}") from e
    if not isinstance(data, dict):
        raise BackendError(f"unexpected response from {r.request.url}: {data!r}")
    return data
