from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles
from pathlib import Path

from capture_station.services.api import app as api_app

root = Path(__file__).resolve().parent


@asynccontextmanager
async def lifespan(app: FastAPI):
    # mounted apps get no lifespan events of their own
    async with api_app.router.lifespan_context(api_app):
        yield


app = FastAPI(title="capture-station web", lifespan=lifespan)

# "/" must be registered BEFORE the catch-all mount("") or it gets intercepted
@app.get("/", response_class=HTMLResponse)
def index():
    return (root / "templates" / "index.html").read_text(encoding="utf-8")

app.mount("/static", StaticFiles(directory=str(root / "static")), name="static")

# mount API sub-app last; the catch-all prefix "" would shadow routes above it
app.mount("", api_app)
