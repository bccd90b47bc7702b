from src.backend.app.leads import calculate_lead_score


CSV = (
    "First Name,Last Name,Phone,Email,Tags\n"
    "Dana,Smith,(555) 201-0001,dana@example.com,hot;callback\n"
    "Lee,Park,555-201-0002,,\n"
    "Nobody,Here,,,\n"
    "Dana,Smith,5552010001,,\n"
)


def _import(client, headers):
    return client.post(
        "/leads/import-csv",
        headers=headers,
        files={"file": ("leads.csv", CSV, "text/csv")},
        data={"tags": "spring"},
    )


def test_create_and_fetch_lead(client, headers):
    r = client.post("/leads", headers=headers, json={"first_name": "Ana", "phone": "(555) 201-0009", "tags": ["a"]})
    assert r.status_code == 200
    lead = r.json()
    assert lead["phone"] == "+15552010009"
    assert lead["status"] == "new"
    r = client.get(f"/leads/{lead['id']}", headers=headers)
    assert r.status_code == 200
    assert r.json()["first_name"] == "Ana"


def test_create_requires_phone_or_email(client, headers):
    r = client.post("/leads", headers=headers, json={"first_name": "Ana"})
    assert r.status_code == 400
    assert r.json()["detail"] == "phone_or_email_required"


def test_csv_import_dedupes_and_tags(client, headers):
    r = _import(client, headers)
    assert r.status_code == 200
    body = r.json()
    assert body["imported"] == 2
    assert body["skipped"] == 1
    assert body["errors"][0]["row"] == 3

    r = client.get("/leads", headers=headers, params={"tag": "spring"})
    items = r.json()["items"]
    assert len(items) == 2
    dana = next(i for i in items if i["first_name"] == "Dana")
    assert dana["tags"] == ["hot", "callback", "spring"]

    tags = {t["name"]: t for t in client.get("/tags", headers=headers).json()["items"]}
    assert "spring" in tags

    # second import of the same file only updates
    again = _import(client, headers).json()
    assert again["imported"] == 0
    assert again["updated"] == 2


def test_export_csv(client, headers):
    _import(client, headers)
    r = client.get("/leads/export", headers=headers)
    assert r.status_code == 200
    assert r.headers["X-Row-Count"] == "2"
    lines = r.text.strip().splitlines()
    assert lines[0].startswith("id,")
    assert any("hot;callback;spring" in line for line in lines[1:])


def test_disposition_sold_marks_client(client, headers):
    lead = client.post("/leads", headers=headers, json={"phone": "5552010003"}).json()
    r = client.post(f"/leads/{lead['id']}/disposition", headers=headers, json={"disposition": "sold"})
    assert r.status_code == 200
    assert r.json()["is_client"] is True
    assert r.json()["disposition"] == "sold"
    r = client.post(f"/leads/{lead['id']}/disposition", headers=headers, json={"disposition": "maybe"})
    assert r.status_code == 400
    assert r.json()["detail"] == "invalid_disposition"


def test_unknown_lead_is_404(client, headers):
    r = client.get("/leads/9999", headers=headers)
    assert r.status_code == 404
    assert r.json()["detail"] == "lead_not_found"


def test_leads_are_tenant_scoped(client, headers):
    lead = client.post("/leads", headers=headers, json={"phone": "5552010004"}).json()
    other = {**headers, "X-Tenant-Id": "t2"}
    assert client.get(f"/leads/{lead['id']}", headers=other).status_code == 404
    assert client.get("/leads", headers=other).json()["total"] == 0


def test_viewer_can_not_create(client, headers):
    r = client.post("/leads", headers={**headers, "X-Role": "viewer"}, json={"phone": "5552010005"})
    assert r.status_code == 403


def test_lead_score_examples():
    now = 1_800_000_000
    hot = calculate_lead_score(
        disposition="qualified", last_engaged_at=now - 3600, total_sent=4, total_received=2, now=now
    )
    assert (hot["score"], hot["temperature"]) == (70, "hot")
    cold = calculate_lead_score(disposition="not_interested", last_engaged_at=None, now=now)
    assert (cold["score"], cold["temperature"]) == (0, "cold")
    warm = calculate_lead_score(disposition=None, last_engaged_at=now - 2 * 86400, total_sent=2, total_received=1, now=now)
    assert (warm["score"], warm["temperature"]) == (45, "warm")
