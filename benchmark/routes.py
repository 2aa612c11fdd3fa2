from flask import Blueprint, jsonify
from sqlalchemy import text

from . import db

bp = Blueprint("main", __name__)

# Small health check, also confirms the database answers
@bp.get("/healthz")
def healthz():
    db.session.execute(text("SELECT 1"))
    return jsonify({"ok": True, "service": "benchmark"})
