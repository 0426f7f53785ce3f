from fastapi import FastAPI

from app.api.auth import router as auth_router
from app.api.chat import router as chat_router
from app.api.habits import router as habits_router
from app.api.onboarding import router as onboarding_router
from app.api.plan import router as plan_router
from app.api.profile import router as profile_router
from app.api.session import router as session_router
from app.db.session import create_tables

app = FastAPI(title="Aura Coach")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Aura Coach API", "status": "ok"}


app.include_router(auth_router)
app.include_router(session_router)
app.include_router(profile_router)
app.include_router(onboarding_router)
app.include_router(chat_router)
app.include_router(habits_router)
app.include_router(plan_router)
