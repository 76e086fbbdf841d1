# app.py: carrot clicker backend: ledger sync, offline earnings, upgrades
from flask import Flask, request, session, jsonify
from werkzeug.security import generate_password_hash, check_password_hash
from werkzeug.exceptions import HTTPException
import os, re, secrets, time, logging

from errors import ClickerError, AuthenticationRequired, BadPayload, BadUpgrade
from ledger import LedgerStore, public_row
from rates import UPGRADES, CURRENCIES, to_wire
import reconcile

app = Flask(__name__)
logger = logging.getLogger(__name__)

def _get_secret_key():
    path = os.environ.get("SECRET_FILE", "secret.key")
    env = os.environ.get("SECRET_KEY")
    if env:
        return env
    if os.path.exists(path):
        with open(path, "rb") as f:
            return f.read()
    key = secrets.token_hex(32).encode()
    with open(path, "wb") as f:
        f.write(key)
    return key

app.secret_key = _get_secret_key()
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_SECURE=False,   # set True if your in https only
    MAX_SESSION_SECONDS=float(os.environ.get("MAX_SESSION_SECONDS", "86400")),
    REJECT_EXTREME_OVERAGE=os.environ.get("REJECT_EXTREME_OVERAGE", "0") == "1",
)

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.path.join(BASE_DIR, os.environ.get("DB_PATH", "db.json"))
app.config["LEDGER"] = LedgerStore(DB_PATH)

USERNAME_RE = re.compile(r"^[A-Za-z0-9_-]{3,30}$")


def ledger():
    return app.config["LEDGER"]

def current_account():
    u = session.get("user")
    if not u:
        raise AuthenticationRequired()
    return u

def _body():
    data = request.get_json(silent=True)
    if data is None:
        return request.form
    if not isinstance(data, dict):
        raise BadPayload()
    return data


# ---------- errors ----------
@app.errorhandler(ClickerError)
def _clicker_error(e):
    return jsonify(e.to_json()), e.status

@app.errorhandler(HTTPException)
def _http_error(e):
    return jsonify({"ok": False, "err": (e.name or "error").lower().replace(" ", "_")}), e.code

@app.errorhandler(Exception)
def _unexpected(e):
    logger.exception("unhandled error on %s %s", request.method, request.path)
    return jsonify({"ok": False, "err": "internal"}), 500


# ---------- Auth ----------
@app.post("/register")
def register_post():
    data = _body()
    u = (data.get("username") or data.get("u") or "").strip()
    p = data.get("password") or data.get("p") or ""
    if not USERNAME_RE.match(u) or not (6 <= len(p) <= 128):
        return jsonify({"ok": False, "err": "invalid"}), 400
    if not ledger().create(u, pw=generate_password_hash(p)):
        return jsonify({"ok": False, "err": "username_taken"}), 400
    session["user"] = u
    logger.info("account %r created", u)
    return jsonify({"ok": True, "user": u})

@app.post("/login")
def login_post():
    data = _body()
    u = (data.get("username") or data.get("u") or "").strip()
    p = data.get("password") or data.get("p") or ""
    doc = ledger().get(u) if u else None
    if not doc or not doc.get("pw") or not check_password_hash(doc["pw"], p):
        return jsonify({"ok": False, "err": "wrong_creds"}), 401
    session["user"] = u
    return jsonify({"ok": True, "user": u})

@app.route("/logout", methods=["GET", "POST"])
def logout():
    session.clear()
    return jsonify({"ok": True})

@app.get("/api/me")
def api_me():
    return jsonify({"ok": True, "user": session.get("user")})

@app.get("/healthz")
def healthz():
    return jsonify({"ok": True, "status": "ok", "ts": int(time.time())})


# ---------- Profile & upgrades ----------
@app.get("/user")
def user_profile():
    u = current_account()
    row = public_row(ledger().require(u))
    game = to_wire({c: int(row.get(c) or 0) for c in CURRENCIES})
    game["upgrades"] = dict(row.get("upgrades") or {})
    game["lastUpdate"] = row.get("last_update")
    return jsonify({"ok": True, "user": {"username": u, "createdAt": row.get("created_at"), "gameData": game}})

@app.get("/user/upgrades")
def user_upgrades():
    u = current_account()
    row = ledger().require(u)
    return jsonify({"ok": True, "owned": sorted(k for k, v in (row.get("upgrades") or {}).items() if v),
                    "catalog": UPGRADES})

@app.post("/user/upgrade/<name>")
def user_buy_upgrade(name):
    u = current_account()
    defn = next((d for d in UPGRADES if d["key"] == name), None)
    if not defn:
        raise BadUpgrade(key=name)
    return jsonify({"ok": True, **reconcile.buy_upgrade(ledger(), u, name, defn["cost"])})


# ---------- Sync ----------
@app.post("/user/sync")
def user_sync():
    u = current_account()
    data = request.get_json(silent=True)
    if data is None:
        raise BadPayload()
    req = reconcile.parse_sync_request(data)
    result = reconcile.reconcile(
        ledger(), u, req,
        max_session_seconds=app.config["MAX_SESSION_SECONDS"],
        reject_extreme=app.config["REJECT_EXTREME_OVERAGE"],
    )
    return jsonify({"ok": True, **result})

@app.get("/user/offline-earnings")
def user_offline_preview():
    u = current_account()
    return jsonify({"ok": True, **reconcile.preview_offline(ledger(), u)})

@app.post("/user/claim-offline")
def user_claim_offline():
    u = current_account()
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BadPayload()
    watched = data.get("watchedAd", False)
    if not isinstance(watched, bool):
        raise BadPayload(field="watchedAd")
    return jsonify({"ok": True, **reconcile.claim_offline(ledger(), u, watched_ad=watched)})


if __name__ == "__main__":
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", 5000)))
