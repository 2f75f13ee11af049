from fastapi import FastAPI, HTTPException, Depends
from pydantic import BaseModel
from contextlib import asynccontextmanager
import logging
import sys

from .db import init_db
from .auth import create_access_token, authenticate_user, require_login
from .api import router as api_router, get_dispatcher
from .models import User
from .schedule import IntervalPolicy, PeriodicRunner
from . import config

logger = logging.getLogger(__name__)
# Ensure INFO-level messages from the service appear on the server console
# when no handlers are configured.
_pkg_logger = logging.getLogger('wapiti')
if not _pkg_logger.handlers:
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter('%(asctime)s %(levelname)s:%(name)s: %(message)s')
    handler.setFormatter(formatter)
    _pkg_logger.addHandler(handler)
_pkg_logger.setLevel(logging.INFO)


@asynccontextmanager
async def lifespan(app: FastAPI):
    from .auth import SECRET_KEY, INSECURE_SECRET_KEY
    if SECRET_KEY == INSECURE_SECRET_KEY:
        raise RuntimeError("SECRET_KEY not set or insecure fallback in use; set the SECRET_KEY environment variable before starting the server")

    await init_db()
    from . import db as _dbmod
    logger.info('starting server using DATABASE_URL=%s', _dbmod.DATABASE_URL)
    if not (config.VAPID_PUBLIC_KEY and config.VAPID_PRIVATE_KEY):
        logger.warning('VAPID keys not configured; push delivery will fail until they are set')

    runner = None
    if config.REMINDER_SCAN_ENABLE:
        dispatcher = get_dispatcher()

        async def _scan_pass():
            await dispatcher.run_scan_once()

        runner = PeriodicRunner(
            'reminder-scan',
            _scan_pass,
            IntervalPolicy(
                base=config.REMINDER_SCAN_INTERVAL_SECONDS,
                max_interval=config.REMINDER_SCAN_INTERVAL_SECONDS * 10,
            ),
        )
        runner.start()
    else:
        logger.info('reminder scan loop disabled (set REMINDER_SCAN_ENABLE=1 to enable)')
    try:
        yield
    finally:
        if runner is not None:
            await runner.stop()


app = FastAPI(lifespan=lifespan)
app.include_router(api_router)


class TokenRequest(BaseModel):
    username: str
    password: str


@app.post('/auth/token')
async def login_for_access_token(req: TokenRequest):
    user = await authenticate_user(req.username, req.password)
    if not user:
        raise HTTPException(status_code=401, detail='Incorrect username or password')
    access_token = create_access_token(data={'sub': user.username})
    return {'access_token': access_token, 'token_type': 'bearer'}


@app.get('/auth/me')
async def whoami(current_user: User = Depends(require_login)):
    return {'id': current_user.id, 'username': current_user.username, 'is_admin': current_user.is_admin}
