import os
import hmac
import hashlib
import base64
from typing import Dict, Any, List, Optional
import httpx

TWILIO_API = "https://api.twilio.com/2010-04-01"


def _creds(account_sid: Optional[str] = None, auth_token: Optional[str] = None) -> tuple[str, str]:
    account_sid = account_sid or os.getenv("TWILIO_ACCOUNT_SID", "")
    auth_token = auth_token or os.getenv("TWILIO_AUTH_TOKEN", "")
    if not (account_sid and auth_token):
        raise RuntimeError("twilio not configured")
    return account_sid, auth_token


def twilio_send_sms(
    to_e164: str,
    body: str,
    from_number: Optional[str] = None,
    media_urls: Optional[List[str]] = None,
    account_sid: Optional[str] = None,
    auth_token: Optional[str] = None,
) -> Dict[str, Any]:
    account_sid, auth_token = _creds(account_sid, auth_token)
    from_number = from_number or os.getenv("TWILIO_FROM_NUMBER", "")
    if not (from_number and to_e164):
        raise RuntimeError("twilio not configured")
    url = f"{TWILIO_API}/Accounts/{account_sid}/Messages.json"
    data: Dict[str, Any] = {"To": to_e164, "From": from_number, "Body": body}
    if media_urls:
        data["MediaUrl"] = list(media_urls)
    callback = os.getenv("TWILIO_STATUS_CALLBACK_URL", "")
    if callback:
        data["StatusCallback"] = callback
    with httpx.Client(timeout=20) as client:
        r = client.post(url, data=data, auth=(account_sid, auth_token))
        r.raise_for_status()
        j = r.json()
        return {"status": j.get("status", "queued"), "provider_id": j.get("sid", ""), "from": from_number}


def twilio_search_numbers(area_code: Optional[str] = None, country: str = "US", limit: int = 20) -> List[Dict[str, Any]]:
    account_sid, auth_token = _creds()
    params: Dict[str, Any] = {"SmsEnabled": "true", "PageSize": max(1, min(int(limit), 50))}
    if area_code:
        params["AreaCode"] = area_code
    url = f"{TWILIO_API}/Accounts/{account_sid}/AvailablePhoneNumbers/{country}/Local.json"
    with httpx.Client(timeout=20) as client:
        r = client.get(url, params=params, auth=(account_sid, auth_token))
        r.raise_for_status()
        rows = r.json().get("available_phone_numbers") or []
    return [
        {
            "phone_number": n.get("phone_number"),
            "friendly_name": n.get("friendly_name"),
            "locality": n.get("locality"),
            "region": n.get("region"),
            "provider": "twilio",
        }
        for n in rows
    ]


def twilio_purchase_number(phone_number: str) -> Dict[str, Any]:
    account_sid, auth_token = _creds()
    data: Dict[str, Any] = {"PhoneNumber": phone_number}
    sms_url = os.getenv("TWILIO_SMS_WEBHOOK_URL", "")
    if sms_url:
        data["SmsUrl"] = sms_url
        data["SmsMethod"] = "POST"
    url = f"{TWILIO_API}/Accounts/{account_sid}/IncomingPhoneNumbers.json"
    with httpx.Client(timeout=30) as client:
        r = client.post(url, data=data, auth=(account_sid, auth_token))
        r.raise_for_status()
        j = r.json()
    return {"phone_number": j.get("phone_number", phone_number), "provider_id": j.get("sid", "")}


def twilio_release_number(provider_id: str) -> bool:
    account_sid, auth_token = _creds()
    url = f"{TWILIO_API}/Accounts/{account_sid}/IncomingPhoneNumbers/{provider_id}.json"
    with httpx.Client(timeout=20) as client:
        r = client.delete(url, auth=(account_sid, auth_token))
        if r.status_code == 404:
            return False
        r.raise_for_status()
    return True


def twilio_verify_signature(url: str, payload: Dict[str, Any], signature: str) -> bool:
    token = os.getenv("TWILIO_AUTH_TOKEN", "")
    if not token or not signature:
        return False
    s = url + "".join([f"{k}{v}" for k, v in sorted(payload.items())])
    mac = hmac.new(token.encode(), s.encode(), hashlib.sha1).digest()
    expected = base64.b64encode(mac).decode()
    return hmac.compare_digest(signature, expected)
