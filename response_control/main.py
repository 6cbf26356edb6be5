from fastapi import FastAPI

from response_control.api.auth import router as auth_router
from response_control.api.response_control import router as response_control_router
from response_control.db.session import create_tables

app = FastAPI(title="Adaptive Response Control")


@app.on_event("startup")
def on_startup() -> None:
    create_tables()


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api")
def api_root() -> dict[str, str]:
    return {"service": "Adaptive Response Control API", "status": "ok"}


app.include_router(auth_router)
app.include_router(response_control_router)
