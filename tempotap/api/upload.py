"""File upload endpoint for offline tempo analysis."""

import logging
import os
import tempfile

from fastapi import APIRouter, UploadFile, File, HTTPException

from tempotap.api.schemas import BeatAnalysisResponse, result_to_response
from tempotap.analysis.engine import analyze_file
from tempotap.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()

ALLOWED_EXTENSIONS = {".wav", ".mp3", ".flac", ".ogg", ".m4a", ".aac", ".wma"}


@router.post("/analyze", response_model=BeatAnalysisResponse)
async def analyze_upload(file: UploadFile = File(...)):
    """Analyze an uploaded audio file for tempo and beats."""
    suffix = ""
    if file.filename and "." in file.filename:
        suffix = "." + file.filename.rsplit(".", 1)[-1].lower()
    if suffix and suffix not in ALLOWED_EXTENSIONS:
        raise HTTPException(400, f"Unsupported format. Use: {', '.join(sorted(ALLOWED_EXTENSIONS))}")

    content = await file.read()
    if len(content) > settings.max_upload_mb * 1024 * 1024:
        raise HTTPException(400, f"File too large (max {settings.max_upload_mb} MB)")

    # librosa needs a file path for some formats
    tmp_path = None
    try:
        with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as tmp:
            tmp.write(content)
            tmp_path = tmp.name

        result = analyze_file(tmp_path)
        return result_to_response(result)
    except Exception as e:
        logger.warning(f"Upload analysis failed: {e}")
        raise HTTPException(500, "Analysis failed")
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
