"""
Recruit CRM FastAPI app
- Explicitly built datastore, SMS channel and auth client (injectable for tests)
- Cron-secret protected delivery loop, bearer-auth user endpoints
- Inbound SMS webhook always answers 200 with empty TwiML
"""

from __future__ import annotations

import os
from datetime import datetime
from typing import Callable, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from crm.auth import AuthClient
from crm.config import Settings, settings as load_settings
from crm.datastore import Datastore
from crm.errors import CRMError
from crm.followup_flow import StageScheduler
from crm.followup_runner import FollowUpRunner
from crm.inbound_webhook import InboundMatcher, router as inbound_router
from crm.locks import KeyStore
from crm.routes.admin import router as admin_router
from crm.routes.followups import router as followups_router
from crm.routes.messages import router as messages_router
from crm.routes.recruits import router as recruits_router
from crm.routes.stages import router as stages_router
from crm.routes.templates import router as templates_router
from crm.runtime import get_logger, iso_now, log_env_summary, utc_now
from crm.sms_sender import Dispatcher, TwilioChannel

logger = get_logger("main")

VERSION = "1.0.0"


def create_app(
    store: Optional[Datastore] = None,
    channel: Optional[TwilioChannel] = None,
    auth_client: Optional[AuthClient] = None,
    *,
    keys: Optional[KeyStore] = None,
    config: Optional[Settings] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FastAPI:
    s = config or load_settings()
    store = store or Datastore.from_settings(s)
    keys = keys if keys is not None else KeyStore.from_settings(s)
    dispatcher = Dispatcher.from_settings(s, channel=channel)

    app = FastAPI(title="Recruit CRM", version=VERSION)
    app.state.settings = s
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.auth = auth_client or AuthClient.from_settings(s)
    app.state.keys = keys
    app.state.scheduler = StageScheduler(store, clock=clock)
    app.state.runner = FollowUpRunner(store, dispatcher, keys=keys, config=s, clock=clock)
    app.state.inbound = InboundMatcher(store, keys)

    # ─────────────────────── Errors ───────────────────────
    @app.exception_handler(CRMError)
    async def crm_error_handler(request: Request, exc: CRMError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("%s %s crashed", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"error": "Server error"})

    # ─────────────────────── Routes ───────────────────────
    @app.get("/health")
    def health():
        return {"ok": True, "store": app.state.store.backend, "time": iso_now(), "version": VERSION}

    app.include_router(inbound_router)
    app.include_router(recruits_router)
    app.include_router(messages_router)
    app.include_router(followups_router)
    app.include_router(stages_router)
    app.include_router(templates_router)
    app.include_router(admin_router)
    return app


log_env_summary()
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
