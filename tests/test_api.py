"""API tests: command endpoint, read models, catalog and projection admin."""

from datetime import timedelta

from conftest import new_id
from domain.enums import EventType
from seed_data import (
    ANALYTICS_PRODUCT_ID,
    ANALYTICS_SALES_PROCESS_ID,
    CRM_ENGAGEMENT_PROCESS_ID,
    CRM_ONBOARDING_PROCESS_ID,
    CRM_PRODUCT_ID,
    CRM_SALES_PROCESS_ID,
    stage_id,
)

API = "/api/v1"
DISCOVERY = stage_id(CRM_SALES_PROCESS_ID, 1)
PROPOSAL = stage_id(CRM_SALES_PROCESS_ID, 3)
NEGOTIATION = stage_id(CRM_SALES_PROCESS_ID, 4)
CHURNED_STAGE = stage_id(CRM_ENGAGEMENT_PROCESS_ID, 4)


def identity(company_product_id=None, product_id=CRM_PRODUCT_ID):
    return {
        "companyProductId": company_product_id or new_id(),
        "companyId": new_id(),
        "productId": product_id,
    }


def start_sale(client, ident, stage=DISCOVERY, process_id=CRM_SALES_PROCESS_ID):
    return client.post(f"{API}/lifecycle/commands", json={
        "action": "start-sale",
        **ident,
        "processId": process_id,
        "initialStageId": stage,
        "actorId": "user-1",
    })


def command(client, ident, action, **fields):
    return client.post(f"{API}/lifecycle/commands", json={"action": action, **ident, **fields})


class TestHealth:
    def test_root(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["status"] == "running"

    def test_health_reports_projection_lag(self, client):
        data = client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["database"] == "ready"
        assert data["projection_lag"] == 0


class TestCommands:
    def test_start_sale_is_projected_for_the_caller(self, client):
        ident = identity()
        response = start_sale(client, ident)
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["projection"]["eventsProcessed"] == 1

        row = client.get(f"{API}/company-products/{ident['companyProductId']}").json()
        assert row["phase"] == "in_sales"
        assert row["current_stage_name"] == "Discovery"
        assert row["last_applied_sequence_no"] == 1

    def test_unknown_action_is_a_bad_request(self, client):
        response = command(client, identity(), "teleport")
        assert response.status_code == 400
        assert response.json()["errorType"] == "ValidationError"
        assert response.json()["error"]

    def test_missing_identity_is_a_bad_request(self, client):
        response = client.post(f"{API}/lifecycle/commands", json={"action": "set-tier", "tier": 2})
        assert response.status_code == 400

    def test_stage_from_another_process_is_rejected(self, client):
        ident = identity()
        start_sale(client, ident)
        response = command(client, ident, "advance-stage", toStageId=stage_id(CRM_ONBOARDING_PROCESS_ID, 1))
        assert response.status_code == 422
        assert response.json()["errorType"] == "InvariantViolation"

    def test_unknown_company_product_is_not_found(self, client):
        response = command(client, identity(), "advance-stage", toStageId=PROPOSAL)
        assert response.status_code == 404
        assert response.json()["errorType"] == "NotFound"

    def test_negative_mrr_is_invalid(self, client):
        ident = identity()
        start_sale(client, ident)
        response = command(client, ident, "set-mrr", mrr=-10)
        assert response.status_code == 400
        assert response.json()["errorType"] == "ValidationError"

    def test_failed_compound_reports_every_step(self, client):
        ident = identity(product_id=ANALYTICS_PRODUCT_ID)
        assert start_sale(
            client, ident,
            stage=stage_id(ANALYTICS_SALES_PROCESS_ID, 1),
            process_id=ANALYTICS_SALES_PROCESS_ID,
        ).status_code == 200

        response = command(client, ident, "complete-sale-start-onboarding")
        assert response.status_code == 404
        steps = response.json()["results"]
        assert [s["step"] for s in steps] == [
            EventType.PROCESS_COMPLETED, EventType.PHASE_CHANGED, EventType.PROCESS_STARTED,
        ]
        assert not any(s["success"] for s in steps)

    def test_churned_outcome_needs_a_churn_reason(self, client):
        ident = identity()
        start_sale(client, ident, stage=NEGOTIATION)
        command(client, ident, "complete-sale-start-onboarding")
        command(client, ident, "complete-onboarding-start-engagement")

        missing = command(client, ident, "complete-process", terminalStageId=CHURNED_STAGE, outcome="churned")
        assert missing.status_code == 400
        assert missing.json()["errorType"] == "ValidationError"

        done = command(client, ident, "complete-process", terminalStageId=CHURNED_STAGE, outcome="churned",
                       churnReason="switched vendor")
        assert done.status_code == 200
        row = client.get(f"{API}/company-products/{ident['companyProductId']}").json()
        assert (row["phase"], row["churn_reason"]) == ("churned", "switched vendor")

    def test_repeated_command_is_a_noop(self, client):
        ident = identity()
        start_sale(client, ident)
        assert command(client, ident, "set-tier", tier=2).status_code == 200
        body = command(client, ident, "set-tier", tier=2).json()
        assert body["success"] is True
        assert body["result"][0]["noop"] is True
        assert body["projection"]["eventsProcessed"] == 0


class TestEventLog:
    def test_events_and_point_in_time_state(self, client):
        ident = identity()
        cp_id = ident["companyProductId"]
        start_sale(client, ident)
        command(client, ident, "advance-stage", toStageId=PROPOSAL)
        command(client, ident, "set-owner", ownerId="u-2", ownerName="Ana")

        events = client.get(f"{API}/lifecycle/company-products/{cp_id}/events").json()
        assert [e["sequence_no"] for e in events] == [1, 2, 3]
        assert events[0]["event_type"] == EventType.SALE_STARTED
        assert events[0]["actor_id"] == "user-1"

        tail = client.get(
            f"{API}/lifecycle/company-products/{cp_id}/events", params={"fromSequence": 2, "upToSequence": 2},
        ).json()
        assert [e["event_type"] for e in tail] == [EventType.STAGE_ADVANCED]

        then = client.get(f"{API}/lifecycle/company-products/{cp_id}/state", params={"upToSequence": 1}).json()
        assert then["current_stage_id"] == DISCOVERY
        assert then["owner_id"] is None
        now = client.get(f"{API}/lifecycle/company-products/{cp_id}/state").json()
        assert now["current_stage_id"] == PROPOSAL
        assert now["owner_name"] == "Ana"

    def test_state_as_of_instant(self, client, commands, clock, aggregate):
        started = clock.now
        assert commands.start_sale(**aggregate, process_id=CRM_SALES_PROCESS_ID, initial_stage_id=DISCOVERY).success
        clock.advance(days=1)
        assert commands.set_owner(**aggregate, owner_id="u-3", owner_name="Kofi").success

        url = f"{API}/lifecycle/company-products/{aggregate['company_product_id']}/state"
        then = client.get(url, params={"asOf": (started + timedelta(hours=12)).isoformat()}).json()
        assert then["last_applied_sequence_no"] == 1
        assert then["owner_id"] is None
        assert client.get(url, params={"asOf": clock.now.isoformat()}).json()["owner_name"] == "Kofi"

    def test_state_of_unknown_company_product(self, client):
        assert client.get(f"{API}/lifecycle/company-products/{new_id()}/state").status_code == 404


class TestReadModels:
    def test_list_filters_and_stage_history(self, client):
        first, second = identity(), identity()
        start_sale(client, first)
        start_sale(client, second)
        command(client, second, "advance-stage", toStageId=PROPOSAL)

        rows = client.get(f"{API}/company-products/", params={"stage_id": PROPOSAL}).json()
        assert [r["company_product_id"] for r in rows] == [second["companyProductId"]]

        history = client.get(f"{API}/company-products/{second['companyProductId']}/stage-history").json()
        assert [h["stage_name"] for h in history] == ["Discovery", "Proposal"]
        assert history[0]["exit_reason"] == "progressed"
        assert history[1]["exited_at"] is None

    def test_stage_counts(self, client):
        for _ in range(2):
            start_sale(client, identity())
        counts = client.get(f"{API}/company-products/stage-counts", params={"product_id": CRM_PRODUCT_ID}).json()
        assert len(counts) == 1
        assert counts[0]["stage_name"] == "Discovery"
        assert counts[0]["total_count"] == 2

    def test_ready_to_close(self, client):
        hot, cold = identity(), identity()
        start_sale(client, hot)
        start_sale(client, cold)
        command(client, hot, "set-close-confidence", confidence=90)
        command(client, cold, "set-close-confidence", confidence=20)

        rows = client.get(f"{API}/company-products/ready-to-close").json()
        assert [r["company_product_id"] for r in rows] == [hot["companyProductId"]]
        rows = client.get(f"{API}/company-products/ready-to-close", params={"threshold": 10}).json()
        assert len(rows) == 2

    def test_unknown_row(self, client):
        assert client.get(f"{API}/company-products/{new_id()}").status_code == 404


class TestCatalog:
    def test_products_and_processes(self, client):
        products = client.get(f"{API}/products").json()
        assert {p["id"] for p in products} == {CRM_PRODUCT_ID, ANALYTICS_PRODUCT_ID}

        processes = client.get(
            f"{API}/products/{CRM_PRODUCT_ID}/processes", params={"process_type": "sales"},
        ).json()
        assert [p["id"] for p in processes] == [CRM_SALES_PROCESS_ID]
        assert [s["name"] for s in processes[0]["stages"]][:2] == ["Discovery", "Demo"]

        process = client.get(f"{API}/processes/{CRM_ONBOARDING_PROCESS_ID}").json()
        assert process["process_type"] == "onboarding"

    def test_unknown_product(self, client):
        assert client.get(f"{API}/products/{new_id()}/processes").status_code == 404
        assert client.get(f"{API}/processes/{new_id()}").status_code == 404


class TestProjectionAdmin:
    def test_catch_up_rebuild_and_verify(self, client):
        ident = identity()
        start_sale(client, ident)

        assert client.post(f"{API}/projections/catch-up").json()["events_processed"] == 0
        rebuilt = client.post(f"{API}/projections/rebuild", json={}).json()
        assert rebuilt["events_processed"] == 1
        rebuilt = client.post(
            f"{API}/projections/rebuild", json={"company_product_ids": [ident["companyProductId"]]},
        ).json()
        assert rebuilt["aggregates_processed"] == 1

        report = client.post(f"{API}/projections/verify").json()
        assert report["mismatched"] == 0
        assert report["repaired"] is None

    def test_sla_scan(self, client, commands, aggregate):
        # Started on the fixture clock, long before the API's own clock
        assert commands.start_sale(**aggregate, process_id=CRM_SALES_PROCESS_ID, initial_stage_id=DISCOVERY).success

        report = client.post(f"{API}/projections/sla-scan").json()
        assert report["breaches"]["events_emitted"] == 1
        assert report["warnings"]["events_emitted"] == 0
        assert report["projection"]["events_processed"] == 1

        row = client.get(f"{API}/company-products/{aggregate['company_product_id']}").json()
        assert row["is_sla_breached"] is True
        counts = client.get(f"{API}/company-products/stage-counts", params={"product_id": CRM_PRODUCT_ID}).json()
        assert counts[0]["sla_breached_count"] == 1

        again = client.post(f"{API}/projections/sla-scan").json()
        assert again["breaches"]["events_emitted"] == 0

    def test_projection_lag_endpoint(self, client):
        assert client.get(f"{API}/company-products/projection-lag").json() == []


def test_serverless_entry_point_exposes_the_app():
    import importlib.util
    from pathlib import Path

    path = Path(__file__).parent.parent / "api" / "index.py"
    module_spec = importlib.util.spec_from_file_location("serverless_index", path)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)

    paths = {route.path for route in module.app.routes}
    assert f"{module.API_PREFIX}/lifecycle/commands" in paths
    assert "/health" in paths
