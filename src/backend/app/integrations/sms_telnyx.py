import os
import base64
import time
from typing import Dict, Any, List, Optional
import httpx
from nacl.signing import VerifyKey
from nacl.exceptions import BadSignatureError

TELNYX_API = "https://api.telnyx.com/v2"


def _headers() -> Dict[str, str]:
    api_key = os.getenv("TELNYX_API_KEY", "")
    if not api_key:
        raise RuntimeError("telnyx not configured")
    return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}


def _error_detail(r: httpx.Response) -> str:
    try:
        errs = r.json().get("errors") or []
        if errs:
            return str(errs[0].get("detail") or errs[0].get("title") or r.status_code)
    except ValueError:
        pass
    return f"http_{r.status_code}"


def telnyx_send_sms(
    to_e164: str,
    body: str,
    from_number: Optional[str] = None,
    media_urls: Optional[List[str]] = None,
) -> Dict[str, Any]:
    headers = _headers()
    profile_id = os.getenv("TELNYX_MESSAGING_PROFILE_ID", "")
    payload: Dict[str, Any] = {"to": to_e164, "text": body}
    # an explicit sender skips number-pool validation on the messaging profile
    if from_number:
        payload["from"] = from_number
    elif profile_id:
        payload["messaging_profile_id"] = profile_id
    else:
        raise RuntimeError("telnyx not configured")
    if media_urls:
        payload["media_urls"] = list(media_urls)
    with httpx.Client(timeout=20) as client:
        r = client.post(f"{TELNYX_API}/messages", headers=headers, json=payload)
        if r.status_code >= 400:
            raise httpx.HTTPStatusError(_error_detail(r), request=r.request, response=r)
        data = r.json().get("data") or {}
    to_list = data.get("to") or [{}]
    return {
        "status": (to_list[0] or {}).get("status", "queued"),
        "provider_id": data.get("id", ""),
        "from": (data.get("from") or {}).get("phone_number") or from_number,
    }


def telnyx_search_numbers(area_code: Optional[str] = None, country: str = "US", limit: int = 20) -> List[Dict[str, Any]]:
    params: Dict[str, Any] = {
        "filter[country_code]": country,
        "filter[features][]": "sms",
        "filter[number_type]": "local",
        "filter[limit]": max(1, min(int(limit), 50)),
    }
    if area_code:
        params["filter[national_destination_code]"] = area_code
    with httpx.Client(timeout=20) as client:
        r = client.get(f"{TELNYX_API}/available_phone_numbers", headers=_headers(), params=params)
        r.raise_for_status()
        rows = r.json().get("data") or []
    out = []
    for n in rows:
        region = {}
        for item in n.get("region_information") or []:
            region[item.get("region_type")] = item.get("region_name")
        out.append(
            {
                "phone_number": n.get("phone_number"),
                "friendly_name": n.get("phone_number"),
                "locality": region.get("rate_center") or region.get("location"),
                "region": region.get("state"),
                "provider": "telnyx",
            }
        )
    return out


def telnyx_purchase_number(phone_number: str, customer_reference: str = "") -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "phone_numbers": [{"phone_number": phone_number}],
        "customer_reference": customer_reference or None,
    }
    profile_id = os.getenv("TELNYX_MESSAGING_PROFILE_ID", "")
    if profile_id:
        payload["messaging_profile_id"] = profile_id
    connection_id = os.getenv("TELNYX_CONNECTION_ID", "")
    if connection_id:
        payload["connection_id"] = connection_id
    with httpx.Client(timeout=30) as client:
        r = client.post(f"{TELNYX_API}/number_orders", headers=_headers(), json=payload)
        if r.status_code >= 400:
            raise httpx.HTTPStatusError(_error_detail(r), request=r.request, response=r)
        data = r.json().get("data") or {}
    return {"phone_number": phone_number, "provider_id": data.get("id", ""), "status": data.get("status", "pending")}


def telnyx_release_number(phone_number: str) -> bool:
    headers = _headers()
    with httpx.Client(timeout=20) as client:
        r = client.get(f"{TELNYX_API}/phone_numbers", headers=headers, params={"filter[phone_number]": phone_number})
        r.raise_for_status()
        rows = r.json().get("data") or []
        if not rows:
            return False
        d = client.delete(f"{TELNYX_API}/phone_numbers/{rows[0]['id']}", headers=headers)
        d.raise_for_status()
    return True


def telnyx_verify_signature(raw_body: bytes, signature_b64: str, timestamp: str, tolerance_seconds: int = 300) -> bool:
    """Ed25519 check of `timestamp|body` against TELNYX_PUBLIC_KEY (base64)."""
    public_key = os.getenv("TELNYX_PUBLIC_KEY", "")
    if not (public_key and signature_b64 and timestamp):
        return False
    try:
        if abs(time.time() - int(timestamp)) > tolerance_seconds:
            return False
        key = VerifyKey(base64.b64decode(public_key))
        signed = timestamp.encode() + b"|" + raw_body
        key.verify(signed, base64.b64decode(signature_b64))
        return True
    except (BadSignatureError, ValueError):
        return False


def parse_inbound(event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Normalize a `message.received` webhook into {from, to, body, provider_id, media}."""
    data = event.get("data") or {}
    if data.get("event_type") != "message.received":
        return None
    payload = data.get("payload") or {}
    to_list = payload.get("to") or [{}]
    return {
        "from": (payload.get("from") or {}).get("phone_number"),
        "to": (to_list[0] or {}).get("phone_number"),
        "body": payload.get("text") or "",
        "provider_id": payload.get("id"),
        "media": [m.get("url") for m in payload.get("media") or [] if m.get("url")],
    }
