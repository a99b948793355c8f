"""
Fake analysis backend for exercising the HTTP analysis adapters without the real service.

Simulates the backend on port 3000 (FAKE_ANALYSIS_PORT):
  POST /api/produtos/lotes/imagens    multipart: imagens=<jpeg>..., lojaId=<id>
       ?stream=true answers an NDJSON progress stream instead of one JSON document
  POST /api/usuario/descrever-corpo   {"foto_base64": "data:image/jpeg;base64,..."}
  POST /reset                         forget issued SKUs

Sending the same image twice answers 400 {"message": "SKU duplicado"}.

Usage:
    python -m capture_station.scripts.fake_analysis_server
"""

import asyncio
import base64
import binascii
import hashlib
import json
import os
from datetime import datetime, timezone
from typing import Optional

import uvicorn
from fastapi import FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

app = FastAPI(title="fake-analysis-server")

STEP_DELAY = float(os.getenv("FAKE_STEP_DELAY", "0.2"))
_issued: dict[str, str] = {}   # image digest -> sku


def _bad_request(message: str) -> JSONResponse:
    print(f"[analysis] 400 {message}")
    return JSONResponse(status_code=400, content={"message": message})


def _issue_sku(data: bytes) -> Optional[str]:
    """CATEGORIA-LINHA-COR-TAMANHO-SEQ-COLECAO, or None if this image already got one."""
    digest = hashlib.sha256(data).hexdigest()
    if digest in _issued:
        return None
    sku = f"CAM-U-PRT-M-{len(_issued) + 1:03d}-F24"
    _issued[digest] = sku
    return sku


def _product(sku: str, loja_id: str) -> dict:
    return {"_id": sku.lower(), "skuStyleMe": sku, "categoria": "CAM", "lojaId": loja_id, "foto": ""}


def _line(obj: dict) -> str:
    return json.dumps(obj, ensure_ascii=False) + "\n"


async def _progress(files: list[tuple[str, bytes]], loja_id: str):
    total = len(files)
    saved, failed = 0, 0
    for i, (name, data) in enumerate(files, start=1):
        yield _line({"tipo": "iniciando", "numeroPeca": i, "totalPecas": total, "nomeArquivo": name,
                     "timestamp": datetime.now(timezone.utc).isoformat()})
        for tipo, status in (("analisando_ia", "Analisando imagem com IA..."), ("gerando_sku", "Gerando SKU...")):
            await asyncio.sleep(STEP_DELAY)
            yield _line({"tipo": tipo, "numeroPeca": i, "totalPecas": total, "status": status})

        sku = _issue_sku(data)
        if sku is None:
            failed += 1
            yield _line({"tipo": "erro", "numeroPeca": i, "totalPecas": total,
                         "status": "Erro ao processar peça", "erro": "SKU duplicado", "nomeArquivo": name})
            continue

        for tipo, status in (("enviando_cloudinary", "Enviando para Cloudinary..."),
                             ("salvando_banco", "Salvando no banco de dados...")):
            await asyncio.sleep(STEP_DELAY)
            yield _line({"tipo": tipo, "numeroPeca": i, "totalPecas": total, "status": status, "sku": sku})
        saved += 1
        yield _line({"tipo": "sucesso", "numeroPeca": i, "totalPecas": total, "status": "Peça concluída com sucesso!",
                     "sku": sku, "produto": _product(sku, loja_id)})

    print(f"[analysis] stream done saved={saved} errors={failed}")
    yield _line({"tipo": "concluido", "resumo": {"totalImagens": total, "produtosSalvos": saved, "erros": failed},
                 "status": "Processamento concluído!", "timestamp": datetime.now(timezone.utc).isoformat()})


@app.post("/api/produtos/lotes/imagens")
async def lotes_imagens(
    imagens: Optional[list[UploadFile]] = File(None),
    lojaId: str = Form(""),
    stream: bool = False,
):
    if not lojaId:
        return _bad_request("lojaId é obrigatório")
    if not imagens:
        return _bad_request("Nenhuma imagem foi enviada")

    files = []
    for f in imagens:
        if not (f.content_type or "").startswith("image"):
            return _bad_request("Apenas arquivos de imagem são permitidos!")
        files.append((f.filename or "produto.jpg", await f.read()))
    print(f"[analysis] {len(files)} image(s) for loja {lojaId} stream={stream}")

    if stream:
        return StreamingResponse(_progress(files, lojaId), media_type="application/x-ndjson")

    await asyncio.sleep(STEP_DELAY)
    products = []
    for _, data in files:
        sku = _issue_sku(data)
        if sku is None:
            return _bad_request("SKU duplicado")
        products.append(_product(sku, lojaId))
    return {"ok": True, "produtos": products, "skuStyleMe": products[0]["skuStyleMe"]}


@app.post("/api/usuario/descrever-corpo")
async def descrever_corpo(request: Request):
    body = await request.json()
    foto = body.get("foto_base64") or ""
    if not foto.startswith("data:image/") or "," not in foto:
        return _bad_request("foto_base64 inválida")
    try:
        data = base64.b64decode(foto.split(",", 1)[1], validate=True)
    except (binascii.Error, ValueError):
        return _bad_request("foto_base64 inválida")

    await asyncio.sleep(STEP_DELAY)
    print(f"[analysis] body photo {len(data)} bytes")
    return {
        "analise": {
            "tipo_corpo": "retangulo",
            "altura_estimada_cm": 170,
            "medidas": {"busto": 90, "cintura": 72, "quadril": 96},
            "confianca": 0.5,
        }
    }


@app.post("/reset")
async def reset():
    _issued.clear()
    print("[analysis] reset")
    return {"ok": True}


@app.get("/status")
async def status():
    return {"ok": True, "issued": len(_issued)}


if __name__ == "__main__":
    port = int(os.getenv("FAKE_ANALYSIS_PORT", "3000"))
    print(f"Fake analysis server starting on http://localhost:{port}")
    uvicorn.run(app, host="0.0.0.0", port=port)
