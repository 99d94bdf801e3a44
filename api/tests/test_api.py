from prizewheel import main as main_module
from prizewheel.models import Prize, RateLimit, SpinCode
from prizewheel.spin import SpinStoreError

from conftest import add_code, add_prize, fetch

FORBIDDEN_KEYS = {"weight", "quantity_remaining", "quantityRemaining", "quantity_total", "quantityTotal", "remaining"}


def all_keys(obj):
    if isinstance(obj, dict):
        for k, v in obj.items():
            yield k
            yield from all_keys(v)
    elif isinstance(obj, list):
        for v in obj:
            yield from all_keys(v)


async def test_health(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


async def test_validate_code_answers(client, session_factory):
    await add_code(session_factory, "AK-2025-GOOD")
    await add_code(session_factory, "AK-2025-USED", is_used=True)

    r = await client.post("/api/validate-code", json={"code": " ak-2025-good "})
    assert r.status_code == 200
    assert r.json() == {"valid": True, "message": "Code is valid"}

    r = await client.post("/api/validate-code", json={"code": "AK-2025-USED"})
    assert r.json() == {"valid": False, "message": "Code already used"}

    r = await client.post("/api/validate-code", json={"code": "AK-2025-WHAT"})
    assert r.json() == {"valid": False, "message": "Invalid code"}

    record = await fetch(session_factory, RateLimit, "unknown")
    assert record.attempts == 2


async def test_validate_code_rejects_blank_code(client):
    r = await client.post("/api/validate-code", json={"code": "   "})
    assert r.status_code == 400
    assert r.json()["valid"] is False


async def test_spin_success_response_hides_odds(client, session_factory):
    await add_code(session_factory, "AK-2025-WINS")
    prize_id = await add_prize(session_factory, "Tote bag", remaining=4, weight=9, image_url="/img/tote.png")

    r = await client.post("/api/spin", json={"code": "ak-2025-wins"})

    assert r.status_code == 200
    body = r.json()
    assert body == {"success": True, "prize": {"id": prize_id, "title": "Tote bag", "imageUrl": "/img/tote.png"}}
    assert not FORBIDDEN_KEYS & set(all_keys(body))


async def test_spin_business_failures_are_400(client, session_factory):
    await add_code(session_factory, "AK-2025-ONCE")
    await add_prize(session_factory, "Mug", remaining=2, weight=1)

    r = await client.post("/api/spin", json={"code": "AK-2025-NONE"})
    assert r.status_code == 400
    assert r.json() == {
        "success": False,
        "error": "Invalid code. Please check and try again.",
        "code": "INVALID_CODE",
    }

    assert (await client.post("/api/spin", json={"code": "AK-2025-ONCE"})).status_code == 200
    r = await client.post("/api/spin", json={"code": "AK-2025-ONCE"})
    assert r.status_code == 400
    assert r.json()["code"] == "CODE_ALREADY_USED"


async def test_spin_with_empty_inventory(client, session_factory):
    await add_code(session_factory, "AK-2025-SOLD")
    await add_prize(session_factory, "Mug", remaining=0, total=3, weight=1)

    r = await client.post("/api/spin", json={"code": "AK-2025-SOLD"})

    assert r.status_code == 400
    assert r.json()["code"] == "NO_PRIZES_AVAILABLE"


async def test_repeated_failures_are_rate_limited(client, session_factory):
    headers = {"X-Forwarded-For": "203.0.113.7"}
    await add_code(session_factory, "AK-2025-REAL")
    await add_prize(session_factory, "Mug", remaining=2, weight=1)

    for i in range(5):
        r = await client.post("/api/spin", json={"code": f"AK-2025-BAD{i}"}, headers=headers)
        assert r.status_code == 400

    r = await client.post("/api/spin", json={"code": "AK-2025-REAL"}, headers=headers)
    assert r.status_code == 429
    assert r.json()["code"] == "RATE_LIMITED"

    r = await client.post("/api/validate-code", json={"code": "AK-2025-REAL"}, headers=headers)
    assert r.status_code == 429

    # a different client is not affected and the code was not consumed
    r = await client.post("/api/spin", json={"code": "AK-2025-REAL"}, headers={"X-Forwarded-For": "198.51.100.2"})
    assert r.status_code == 200


async def test_success_resets_the_counter(client, session_factory):
    headers = {"X-Real-IP": "203.0.113.9"}
    await add_code(session_factory, "AK-2025-OKAY")
    await add_prize(session_factory, "Mug", remaining=2, weight=1)

    for _ in range(3):
        await client.post("/api/spin", json={"code": "AK-2025-XXXX"}, headers=headers)
    assert (await fetch(session_factory, RateLimit, "203.0.113.9")).attempts == 3

    r = await client.post("/api/spin", json={"code": "AK-2025-OKAY"}, headers=headers)
    assert r.status_code == 200
    assert (await fetch(session_factory, RateLimit, "203.0.113.9")).attempts == 0


async def test_store_failure_is_503_and_not_a_rejection(client, session_factory, monkeypatch):
    code_id = await add_code(session_factory, "AK-2025-DOWN")

    async def unavailable(*args, **kwargs):
        raise SpinStoreError("store down")

    monkeypatch.setattr(main_module, "perform_spin", unavailable)

    r = await client.post("/api/spin", json={"code": "AK-2025-DOWN"})

    assert r.status_code == 503
    assert r.json()["code"] == "TRANSIENT_STORE_ERROR"
    assert (await fetch(session_factory, SpinCode, code_id)).is_used is False
    assert await fetch(session_factory, RateLimit, "unknown") is None


async def test_public_prizes_hide_odds(client, session_factory):
    await add_prize(session_factory, "Mug", remaining=2, weight=5, image_url="/img/mug.png")
    await add_prize(session_factory, "Scarf", remaining=0, total=2, weight=1)

    r = await client.get("/api/prizes")

    assert r.status_code == 200
    assert [p["title"] for p in r.json()] == ["Mug", "Scarf"]
    assert r.json()[0]["imageUrl"] == "/img/mug.png"
    assert not FORBIDDEN_KEYS & set(all_keys(r.json()))


async def test_last_winner_refreshes_after_a_spin(client, session_factory):
    await add_code(session_factory, "AK-2025-TICK", name="Miriam")
    await add_prize(session_factory, "Candle set", remaining=1, weight=1)

    r = await client.get("/api/last-winner")
    assert r.json()["winners"] == []

    await client.post("/api/spin", json={"code": "AK-2025-TICK"})

    r = await client.get("/api/last-winner")
    winners = r.json()["winners"]
    assert len(winners) == 1
    assert winners[0]["name"] == "Miriam"
    assert winners[0]["prizeName"] == "Candle set"


async def test_admin_routes_require_token(client):
    r = await client.get("/api/admin/winners")
    assert r.status_code == 401
    assert r.json() == {"message": "Missing bearer token", "code": "HTTP_ERROR"}

    r = await client.get("/api/admin/winners", headers={"Authorization": "Bearer nope"})
    assert r.status_code == 401


async def test_admin_login(client):
    r = await client.post("/api/admin/login", json={"password": "wrong"})
    assert r.status_code == 401

    r = await client.post("/api/admin/login", json={"password": "letmein"})
    assert r.status_code == 200
    token = r.json()["token"]

    r = await client.get("/api/admin/prizes", headers={"Authorization": f"Bearer {token}"})
    assert r.status_code == 200


async def test_admin_login_is_rate_limited(client):
    for _ in range(5):
        await client.post("/api/admin/login", json={"password": "wrong"})

    r = await client.post("/api/admin/login", json={"password": "letmein"})
    assert r.status_code == 429


async def test_validation_errors_use_common_shape(client):
    r = await client.post("/api/spin", json={})
    assert r.status_code == 422
    assert r.json()["code"] == "VALIDATION_ERROR"


async def test_valid_precheck_resets_the_counter(client, session_factory):
    headers = {"X-Real-IP": "203.0.113.11"}
    await add_code(session_factory, "AK-2025-NICE")

    for _ in range(2):
        await client.post("/api/validate-code", json={"code": "AK-2025-NOPE"}, headers=headers)
    assert (await fetch(session_factory, RateLimit, "203.0.113.11")).attempts == 2

    r = await client.post("/api/validate-code", json={"code": "AK-2025-NICE"}, headers=headers)

    assert r.json()["valid"] is True
    assert (await fetch(session_factory, RateLimit, "203.0.113.11")).attempts == 0


async def test_single_prize_lookup_shows_display_fields(client, session_factory):
    prize_id = await add_prize(session_factory, "Scarf", remaining=2, weight=7, image_url="/img/scarf.png")

    r = await client.get(f"/api/prizes/{prize_id}")

    assert r.status_code == 200
    assert r.json() == {"id": prize_id, "title": "Scarf", "imageUrl": "/img/scarf.png"}

    r = await client.get("/api/prizes/9999")
    assert r.status_code == 404
