"""
HTTP clients for the analysis backend.

Product analysis:
  Request:  POST /api/produtos/lotes/imagens  multipart: imagens=<jpeg>, lojaId=<id>
  Response: {"ok": true, "produtos": [...], "skuStyleMe": "..."}
            or an application/x-ndjson progress stream ending in {"tipo": "concluido"}
Profile analysis:
  Request:  POST /api/usuario/descrever-corpo  {"foto_base64": "data:image/jpeg;base64,..."}
  Response: {"analise": {...}}
Any non-2xx answer carries {"message": "..."} as the user-facing reason.
"""
import json

import httpx

from capture_station.adapters.analysis.base import AnalysisEndpoint
from capture_station.orchestrator.contracts import AnalysisResult, ImageHandle, ProgressEvent
from capture_station.orchestrator.errors import GENERIC_SUBMIT_MESSAGE, NetworkFailure, ServerRejected

PRODUCT_PATH = "/api/produtos/lotes/imagens"
PROFILE_PATH = "/api/usuario/descrever-corpo"


def _error_message(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    if not isinstance(data, dict):
        return None
    return data.get("message") or data.get("error") or data.get("erro")


class _HttpAnalysis(AnalysisEndpoint):
    def __init__(self, status_store, base_url: str = "http://127.0.0.1:3000", path: str = "",
                 timeout: float = 60.0, transport: httpx.AsyncBaseTransport | None = None):
        self.status = status_store
        self.base_url = base_url.rstrip("/")
        self.path = path
        self.timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.path}"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    def _rejected(self, resp: httpx.Response) -> ServerRejected:
        msg = _error_message(resp)
        self.status.log(f"{self.name}: HTTP {resp.status_code}: {msg or resp.text[:200]}")
        return ServerRejected(msg or GENERIC_SUBMIT_MESSAGE, status_code=resp.status_code)

    def _json_body(self, resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            self.status.log(f"{self.name}: response is not JSON")
            raise ServerRejected(GENERIC_SUBMIT_MESSAGE, status_code=resp.status_code)
        if not isinstance(data, dict):
            raise ServerRejected(GENERIC_SUBMIT_MESSAGE, status_code=resp.status_code)
        return data


class HttpProductAnalysis(_HttpAnalysis):
    name = "http_product_analysis"

    def __init__(self, status_store, base_url: str = "http://127.0.0.1:3000", path: str = PRODUCT_PATH,
                 timeout: float = 60.0, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(status_store, base_url=base_url, path=path, timeout=timeout, transport=transport)

    async def analyze(self, image: ImageHandle, context: dict, on_progress=None) -> AnalysisResult:
        files = {"imagens": ("produto.jpg", image.data, image.mime_type)}
        data = {k: str(v) for k, v in context.items() if v is not None}
        self.status.log(f"{self.name}: POST {self.path} ({image.size} bytes, {image.width}x{image.height})")
        try:
            async with self._client() as client:
                async with client.stream("POST", self.url, files=files, data=data) as resp:
                    if not resp.is_success:
                        await resp.aread()
                        raise self._rejected(resp)
                    if "ndjson" in resp.headers.get("content-type", ""):
                        return await self._read_ndjson(resp, on_progress)
                    await resp.aread()
                    return self._read_json(resp)
        except httpx.TransportError as e:
            self.status.log(f"{self.name}: transport error {type(e).__name__}: {e}")
            raise NetworkFailure() from e

    def _read_json(self, resp: httpx.Response) -> AnalysisResult:
        data = self._json_body(resp)
        if data.get("ok") is False:
            raise ServerRejected(data.get("message") or GENERIC_SUBMIT_MESSAGE, status_code=resp.status_code)
        products = data.get("produtos") or []
        sku = data.get("skuStyleMe") or next((p.get("skuStyleMe") for p in products if p.get("skuStyleMe")), None)
        self.status.log(f"{self.name}: ok sku={sku} products={len(products)}")
        return AnalysisResult(ok=True, message=data.get("message"), products=products, sku_style_me=sku, raw=data)

    async def _read_ndjson(self, resp: httpx.Response, on_progress) -> AnalysisResult:
        products: list[dict] = []
        errors: list[str] = []
        summary: dict | None = None
        final_status = None

        async for line in resp.aiter_lines():
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                self.status.log(f"{self.name}: skipping malformed line {line[:80]!r}")
                continue

            event = ProgressEvent(
                kind=obj.get("tipo", ""),
                item=obj.get("numeroPeca"),
                total=obj.get("totalPecas"),
                message=obj.get("status") or obj.get("mensagem") or obj.get("erro"),
                sku=obj.get("sku") or (obj.get("produto") or {}).get("skuStyleMe"),
                raw=obj,
            )
            self.status.log(f"{self.name}: event {event.kind} {event.item or ''}/{event.total or ''}")
            if on_progress is not None:
                on_progress(event)

            if event.kind == "sucesso" and obj.get("produto"):
                products.append(obj["produto"])
            elif event.kind == "erro":
                errors.append(obj.get("erro") or obj.get("mensagem") or GENERIC_SUBMIT_MESSAGE)
            elif event.kind == "concluido":
                summary = obj.get("resumo") or {}
                final_status = obj.get("status")
                break

        if not products:
            raise ServerRejected(errors[0] if errors else GENERIC_SUBMIT_MESSAGE, status_code=resp.status_code)

        sku = products[0].get("skuStyleMe")
        self.status.log(f"{self.name}: done saved={len(products)} errors={len(errors)}")
        return AnalysisResult(
            ok=True,
            message=final_status,
            products=products,
            sku_style_me=sku,
            raw={"resumo": summary, "erros": errors},
        )


class HttpProfileAnalysis(_HttpAnalysis):
    name = "http_profile_analysis"

    def __init__(self, status_store, base_url: str = "http://127.0.0.1:3000", path: str = PROFILE_PATH,
                 timeout: float = 60.0, transport: httpx.AsyncBaseTransport | None = None):
        super().__init__(status_store, base_url=base_url, path=path, timeout=timeout, transport=transport)

    async def analyze(self, image: ImageHandle, context: dict, on_progress=None) -> AnalysisResult:
        payload = {"foto_base64": image.to_data_url()}
        payload.update({k: v for k, v in context.items() if v is not None})
        self.status.log(f"{self.name}: POST {self.path} ({image.size} bytes)")
        try:
            async with self._client() as client:
                resp = await client.post(self.url, json=payload)
        except httpx.TransportError as e:
            self.status.log(f"{self.name}: transport error {type(e).__name__}: {e}")
            raise NetworkFailure() from e

        if not resp.is_success:
            raise self._rejected(resp)
        data = self._json_body(resp)
        analysis = data.get("analise")
        if analysis is None:
            raise ServerRejected(data.get("message") or GENERIC_SUBMIT_MESSAGE, status_code=resp.status_code)
        self.status.log(f"{self.name}: analysis received ({len(analysis)} fields)")
        return AnalysisResult(ok=True, message=data.get("message"), analysis=analysis, raw=data)
