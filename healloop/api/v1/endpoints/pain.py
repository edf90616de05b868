"""
Pain API - run the failure detector over arbitrary output

Useful for browser consoles and external logs that never pass through a
sandbox. Each request gets its own detector, so deduplication only applies
within the submitted batch.
"""

from typing import List

from fastapi import APIRouter

from healloop.schemas.pain import PainAnalyzeRequest, PainSignalResponse
from healloop.services.pain_detector import PainDetector, PainSignal, format_for_ai


router = APIRouter(prefix="/pain", tags=["Pain Detection"])


def _to_response(signal: PainSignal) -> PainSignalResponse:
    return PainSignalResponse(**signal.to_dict(), prompt=format_for_ai(signal))


@router.post("/analyze", response_model=List[PainSignalResponse])
async def analyze_output(request: PainAnalyzeRequest):
    """Return one signal per failing line, deduplicated within the batch"""
    detector = PainDetector()
    analyze = detector.analyze_browser_error if request.source == "browser" else detector.analyze_log

    signals = []
    for line in request.lines:
        signal = analyze(line)
        if signal is not None:
            signals.append(_to_response(signal))
    return signals
