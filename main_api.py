import logging
import os
from typing import List

import cv2
import numpy as np
from fastapi import FastAPI, File, HTTPException, UploadFile

from biometric_service import BiometricService
from face_biometrics.frames import Frame, ReplayFrameSource

# --- CENTRALIZED LOGGING CONFIGURATION ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CONFIG_PATH = os.environ.get(
    "FACE_BIOMETRICS_CONFIG", os.path.join(os.path.dirname(os.path.abspath(__file__)), "config.yaml"))

app = FastAPI(title="Face Biometrics API")

# One shared service; its template store and active-subject set outlive each request
service = BiometricService(config_path=CONFIG_PATH)

ERROR_STATUS = {
    "unknown_subject": 404,
    "busy": 409,
    "insufficient_samples": 422,
    "acquisition": 503,
    "timeout": 503,
}


def frames_from_uploads(files: List[UploadFile]) -> ReplayFrameSource:
    """Decodes the uploaded images, in order, into a looping frame sequence."""
    frames = []
    for file in files:
        if file.content_type and not file.content_type.startswith('image/'):
            raise HTTPException(status_code=400, detail=f"'{file.filename}' is not an image file.")
        nparr = np.frombuffer(file.file.read(), np.uint8)
        image = cv2.imdecode(nparr, cv2.IMREAD_COLOR) if nparr.size else None
        if image is None:
            raise HTTPException(status_code=400, detail=f"Could not decode image '{file.filename}'.")
        frames.append(Frame.from_bgr(image))
    if not frames:
        raise HTTPException(status_code=400, detail="At least one image file is required.")
    return ReplayFrameSource(frames, loop=True)


def raise_for_error(result: dict) -> dict:
    if result['status'] != 'error':
        return result
    kind = result.get('kind')
    if kind in ERROR_STATUS:
        status_code = ERROR_STATUS[kind]
    else:
        status_code = 422 if result.get('recoverable', True) else 503
    raise HTTPException(status_code=status_code, detail=result)


@app.post("/enroll/{subject_id}")
def enroll(subject_id: str, files: List[UploadFile] = File(...)):
    """
    Endpoint for subject enrollment.
    The uploaded images are treated as consecutive camera frames.
    """
    result = service.enroll_subject(subject_id, frames_from_uploads(files))
    return raise_for_error(result)


@app.post("/verify/{subject_id}")
def verify(subject_id: str, files: List[UploadFile] = File(...)):
    """Endpoint for verifying a live capture against an enrolled subject."""
    result = service.verify_subject(subject_id, frames_from_uploads(files))
    if result['status'] == 'rejected':
        raise HTTPException(status_code=401, detail=result) # 401 Unauthorized
    return raise_for_error(result)


@app.get("/")
def read_root():
    return {"message": "Welcome to the Face Biometrics API", "mode": service.pipeline.mode}

# To run this application:
# uvicorn main_api:app --reload
