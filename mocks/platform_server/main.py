"""Mock financial platform (JSON-RPC) and terminal data API for local runs and tests"""

import base64
import json
from datetime import date
from typing import Any, Dict, List, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

app = FastAPI(title="Mock Platform Server", version="1.0.0")

TERMINAL_TOKEN = "test-terminal-token"

# ext_key -> transfer record
transfers: Dict[str, Dict[str, Any]] = {}
# machine sales: {"id", "machine_id", "date", "amount"}
terminal_items: List[Dict[str, Any]] = []
# sign-system -> PEM public key; unknown signers are not verified
public_keys: Dict[str, str] = {}
calls: List[str] = []
# to_virtual_account values the platform rejects
rejected_accounts = {"va-blocked"}


def reset() -> None:
    transfers.clear()
    terminal_items.clear()
    public_keys.clear()
    calls.clear()


def rpc_result(request_id: Any, result: Any) -> JSONResponse:
    return JSONResponse(content={"jsonrpc": "2.0", "id": request_id, "result": result})


def rpc_error(request_id: Any, code: int, message: str) -> JSONResponse:
    return JSONResponse(content={"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}})


def verify(body: bytes, signer: str, signature: str) -> bool:
    pem = public_keys.get(signer)
    if pem is None:
        return True
    key = serialization.load_pem_public_key(pem.encode("utf-8"))
    try:
        key.verify(base64.b64decode(signature), body, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature:
        return False
    return True


@app.get("/health")
def health(): return {"status": "ok"}


@app.post("/jsonrpc")
async def jsonrpc(
    request: Request,
    sign_data: Optional[str] = Header(None),
    sign_system: Optional[str] = Header(None),
    sign_thumbprint: Optional[str] = Header(None),
):
    body = await request.body()
    if not sign_data or not sign_system or not sign_thumbprint:
        raise HTTPException(status_code=401, detail="missing signature headers")
    if not verify(body, sign_system, sign_data):
        raise HTTPException(status_code=401, detail="signature mismatch")

    payload = json.loads(body)
    request_id = payload.get("id")
    method = payload.get("method")
    params = payload.get("params") or {}
    calls.append(method)

    if method == "echo":
        return rpc_result(request_id, params)

    if method == "list_virtual_account":
        return rpc_result(request_id, {"virtual_accounts": ["va-source", "va-alice", "va-bob"]})

    if method == "transfer_between_virtual_accounts_v2":
        ext_key = params.get("ext_key")
        if ext_key in transfers:
            return rpc_error(request_id, 4909, "Idempotent request already in process")
        if params.get("to_virtual_account") in rejected_accounts:
            return rpc_error(request_id, 4422, "Recipient virtual account is blocked")
        transfer = {
            "transfer_id": f"tr-{len(transfers) + 1}",
            "ext_key": ext_key,
            "amount": params.get("amount"),
            "status": "SUCCESS",
        }
        transfers[ext_key] = transfer
        return rpc_result(request_id, transfer)

    if method == "get_virtual_accounts_transfer":
        transfer = transfers.get(params.get("ext_key"))
        if transfer is None:
            return rpc_error(request_id, 4404, "Transfer not found")
        return rpc_result(request_id, transfer)

    return rpc_error(request_id, -32601, f"Method {method} not found")


@app.get("/transactions")
def get_transactions(
    machine_id: str,
    date_from: date = Query(...),
    date_to: date = Query(...),
    authorization: Optional[str] = Header(None),
):
    if authorization != f"Bearer {TERMINAL_TOKEN}":
        raise HTTPException(status_code=401, detail="invalid token")
    items = [
        item
        for item in terminal_items
        if item["machine_id"] == machine_id and date_from.isoformat() <= item["date"] <= date_to.isoformat()
    ]
    return {"items": items}
