# rhythm_simulator/api.py
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from .api_models import ArrhythmiaParams, RhythmSimulationResponse
from .constants import FS
from .exceptions import InvalidParameter
from .rhythm_logic import simulate_rhythm

logger = logging.getLogger(__name__)

app = FastAPI(title="ECG Rhythm Simulator")

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


@app.get("/health")
def health_check():
    return {"status": "healthy", "annotation_fs": FS}


@app.post("/generate_rhythm", response_model=RhythmSimulationResponse)
def generate_rhythm(params: ArrhythmiaParams):
    try:
        result = simulate_rhythm(params)
    except InvalidParameter as e:
        logger.warning(f"Rejected rhythm parameters: {e}")
        raise HTTPException(status_code=422, detail=str(e))
    return result.to_dict()
