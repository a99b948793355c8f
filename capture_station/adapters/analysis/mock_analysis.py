import asyncio
import itertools

from capture_station.adapters.analysis.base import AnalysisEndpoint
from capture_station.orchestrator.contracts import AnalysisResult, ProgressEvent
from capture_station.orchestrator.errors import ServerRejected, SubmitError

_seq = itertools.count(1)


class MockAnalysis(AnalysisEndpoint):
    """Answers every still with a made-up product, no network involved.

    fail_with: a SubmitError to raise instead (e.g. ServerRejected("SKU duplicado"))
    delay:     seconds to sleep before answering
    profile:   answer with a body analysis instead of a product
    """

    name = "mock_analysis"

    def __init__(self, status_store, fail_with: SubmitError | None = None, delay: float = 0.0,
                 profile: bool = False):
        self.status = status_store
        self.fail_with = fail_with
        self.delay = delay
        self.profile = profile
        self.calls: list[dict] = []

    async def analyze(self, image, context: dict, on_progress=None) -> AnalysisResult:
        self.calls.append({"size": image.size, "context": dict(context)})
        if on_progress is not None:
            on_progress(ProgressEvent(kind="analisando_ia", item=1, total=1, message="Analysing image..."))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            self.status.log(f"mock_analysis: rejecting ({self.fail_with.message})")
            raise self.fail_with
        if image.size == 0:
            raise ServerRejected("Empty image")

        if self.profile:
            analysis = {"tipo_corpo": "retangulo", "altura_estimada_cm": 170, "confianca": 0.5}
            self.status.log("mock_analysis: body analysis")
            return AnalysisResult(ok=True, analysis=analysis, raw={"analise": analysis, "mock": True})

        sku = f"CAM-U-PRT-M-{next(_seq):03d}-F24"
        product = {"skuStyleMe": sku, "categoria": "CAM", "lojaId": context.get("lojaId")}
        self.status.log(f"mock_analysis: {sku}")
        return AnalysisResult(ok=True, products=[product], sku_style_me=sku, raw={"mock": True})
