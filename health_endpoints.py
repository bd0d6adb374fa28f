import azure.functions as func
from sqlalchemy import text

from function_app import app
from shared.db import SessionLocal
from utils.cors import build_cors_headers
from utils.http import json_response, preflight


@app.function_name(name="HealthApi")
@app.route(route="health", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def health_api(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return preflight(cors)
    db = SessionLocal()
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception:  # pylint: disable=broad-except
        database = "unavailable"
    finally:
        db.close()
    return json_response({"status": "ok", "database": database}, status_code=200, cors=cors)
