"""
Tests for service request intake and conversion.

Run with: pytest tests/test_service_requests.py -v
"""

import pytest

from errors import ValidationError
from service_requests import (
    RequestFormData,
    ServiceRequestService,
    clean_request_fields,
    initial_status,
)


@pytest.fixture
def service(client, cache, notifier):
    return ServiceRequestService(client, cache=cache, notifier=notifier)


class TestCleanRequestFields:
    """Tests for free-text cleanup."""

    def test_trims_and_blanks_become_none(self):
        cleaned = clean_request_fields({"contact_name": "  Ana  ", "notes": "   ", "city": None})
        assert cleaned == {"contact_name": "Ana", "notes": None, "city": None}

    def test_linear_feet_parsed(self):
        assert clean_request_fields({"linear_feet_estimate": "120.5"})["linear_feet_estimate"] == 120.5
        assert clean_request_fields({"linear_feet_estimate": ""})["linear_feet_estimate"] is None

    def test_untouched_fields(self):
        assert clean_request_fields({"source": " phone "}) == {"source": " phone "}


class TestInitialStatus:
    def test_booked_assessment(self):
        data = RequestFormData(source="phone", assessment_scheduled_at="2025-06-03T09:00:00")
        assert initial_status(data) == "assessment_scheduled"

    def test_no_assessment_needed(self):
        data = RequestFormData(
            source="phone", requires_assessment=False, assessment_scheduled_at="2025-06-03T09:00:00"
        )
        assert initial_status(data) == "pending"

    def test_unscheduled(self):
        assert initial_status(RequestFormData(source="web")) == "pending"


class TestServiceRequestService:
    """Tests for request reads and writes."""

    def test_create_request(self, service, client, notifier):
        client.insert_one.return_value = {"id": "r-1", "request_number": "SR-0001"}

        service.create_request(RequestFormData(source="phone", contact_name=" Ana ", zip=" 78701 "))

        row = client.insert_one.call_args.args[1]
        assert row["contact_name"] == "Ana"
        assert row["zip"] == "78701"
        assert row["state"] == "TX"
        assert row["request_type"] == "new_quote"
        assert row["status"] == "pending"
        assert notifier.successes == ["Request SR-0001 created"]

    def test_create_request_unknown_type(self, service):
        with pytest.raises(ValidationError):
            service.create_request(RequestFormData(source="phone", request_type="gutter"))

    def test_update_request_status(self, service, client):
        client.select_one.return_value = {"status": "pending"}
        service.update_request_status("r-1", "archived")
        assert client.update.call_args.args[1]["status"] == "archived"
        assert client.insert.call_args.args[1]["entity_type"] == "request"

    def test_update_request_status_unknown(self, service):
        with pytest.raises(ValidationError):
            service.update_request_status("r-1", "won")

    def test_schedule_assessment(self, service, client):
        service.schedule_assessment("r-1", "2025-06-03T09:00:00", rep_id="rep-1")
        values = client.update.call_args.args[1]
        assert values["status"] == "assessment_scheduled"
        assert values["assessment_rep_id"] == "rep-1"


class TestConvertRequest:
    """Tests for turning a request into a quote or job."""

    def test_convert_to_quote(self, service, client, notifier):
        client.select_one.return_value = {
            "id": "r-1",
            "status": "assessment_completed",
            "client_id": "c-1",
            "address_line1": "9 Site Rd",
            "city": "Austin",
            "zip": "78701",
            "linear_feet_estimate": 150,
            "client": {"billing_address_line1": "1 Main St", "billing_city": "Austin"},
        }
        client.insert_one.return_value = {"id": "q-1", "quote_number": "Q-0001"}

        service.convert_request_to_quote("r-1")

        quote_row = client.insert_one.call_args.args[1]
        assert quote_row["job_address"] == {"line1": "9 Site Rd", "city": "Austin", "state": "TX", "zip": "78701"}
        assert quote_row["billing_address"]["line1"] == "1 Main St"
        assert quote_row["linear_feet"] == 150
        assert quote_row["status"] == "draft"

        values = client.update.call_args.args[1]
        assert values["status"] == "converted"
        assert values["converted_to_quote_id"] == "q-1"
        history = client.insert.call_args.args[1]
        assert history["from_status"] == "assessment_completed"
        assert history["notes"] == "Converted to Quote #Q-0001"
        assert notifier.successes == ["Quote Q-0001 created from request"]

    def test_convert_to_quote_without_addresses(self, service, client):
        client.select_one.return_value = {"id": "r-1", "client": None}
        client.insert_one.return_value = {"id": "q-1"}

        service.convert_request_to_quote("r-1")

        quote_row = client.insert_one.call_args.args[1]
        assert quote_row["job_address"] is None
        assert quote_row["billing_address"] is None

    def test_convert_to_job_requires_client(self, service, client, notifier):
        client.select_one.return_value = {"id": "r-1", "client_id": None}

        with pytest.raises(ValidationError):
            service.convert_request_to_job("r-1")

        client.insert_one.assert_not_called()
        assert notifier.errors

    def test_convert_to_job_creates_project(self, service, client):
        client.select_one.return_value = {
            "id": "r-1",
            "status": "pending",
            "client_id": "c-1",
            "contact_name": "Ana Ruiz",
            "project_id": None,
        }
        client.insert_one.side_effect = [{"id": "p-1"}, {"id": "j-1", "job_number": "J-0001"}]

        job = service.convert_request_to_job("r-1")

        assert job["id"] == "j-1"
        project_row = client.insert_one.call_args_list[0].args[1]
        assert project_row["name"] == "Ana Ruiz"
        assert project_row["source_request_id"] == "r-1"
        job_row = client.insert_one.call_args_list[1].args[1]
        assert job_row["project_id"] == "p-1"
        assert job_row["status"] == "won"
        link_update, convert_update = client.update.call_args_list
        assert link_update.args[1] == {"project_id": "p-1"}
        assert convert_update.args[1]["converted_to_job_id"] == "j-1"

    def test_convert_to_job_reuses_project(self, service, client):
        client.select_one.return_value = {"id": "r-1", "client_id": "c-1", "project_id": "p-7"}
        client.insert_one.return_value = {"id": "j-1"}

        service.convert_request_to_job("r-1")

        assert client.insert_one.call_count == 1
        assert client.insert_one.call_args.args[1]["project_id"] == "p-7"
