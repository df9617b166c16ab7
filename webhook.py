# webhook.py
from __future__ import annotations

import json
import logging

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from admission import REVIEW_API_VERSION, AdmissionDecision, AdmissionMutator
from errors import MalformedAdmission

LOG = logging.getLogger(__name__)

JSON_CONTENT_TYPE = "application/json"


def create_app(mutator: AdmissionMutator) -> FastAPI:
    app = FastAPI(title="hermit admission webhook")

    @app.get("/healthz")
    def healthz():
        return {"message": "ok"}

    @app.post("/mutate")
    async def mutate(request: Request):
        body = await request.body()
        LOG.info("request received: method=%s, uri=%s", request.method, request.url.path)
        content_type = request.headers.get("content-type")
        try:
            if content_type is not None and _media_type(content_type) != JSON_CONTENT_TYPE:
                raise MalformedAdmission(f"invalid content-type: {content_type!r}")
            payload = json.loads(body or b"null")
            return await run_in_threadpool(mutator.review, payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            err = MalformedAdmission(f"request body is not JSON: {e}")
        except MalformedAdmission as e:
            err = e
        LOG.error("invalid request: %s", err)
        invalid = AdmissionDecision(uid=_uid_of(body), allowed=False, reason=str(err))
        return JSONResponse(status_code=400, content=invalid.to_review(REVIEW_API_VERSION))

    return app


def _media_type(value: str) -> str:
    return value.split(";", 1)[0].strip().lower()


def _uid_of(body: bytes) -> str:
    try:
        uid = json.loads(body).get("request", {}).get("uid", "")
    except (ValueError, AttributeError):
        return ""
    return uid if isinstance(uid, str) else ""
