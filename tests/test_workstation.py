"""Unit tests for workstation routing."""
from datetime import timedelta

import pytest

from orderflow.errors import InvalidStage, InvalidTransition, NotFound, ValidationError
from orderflow.models import RoutingStatus
from orderflow.statuses import OrderStatus as S, WorkstationStage as W
from orderflow.workstation import is_inspection_complete


@pytest.fixture
def ws(services):
    return services.workstation


@pytest.fixture
def inspecting(ws, make_order):
    order = make_order(garments=[{"type": "Shirt", "price": 200}, {"type": "Coat", "price": 900}])
    return ws.route_order(order.order_id, "counter-1")


class TestRouting:
    def test_main_store_order_goes_to_inspection(self, inspecting):
        assert inspecting.status == S.INSPECTION
        assert inspecting.routing_status == RoutingStatus.ASSIGNED
        assert inspecting.processing_branch_id == "MAIN"
        assert inspecting.assigned_workstation_stage == W.INSPECTION

    def test_satellite_order_waits_for_transfer(self, ws, make_order):
        order = ws.route_order(make_order(branch_id="SAT").order_id, "counter-1")
        assert order.status == S.RECEIVED
        assert order.routing_status == RoutingStatus.PENDING
        assert order.processing_branch_id == "MAIN"
        assert [o.order_id for o in ws.pending_routing("SAT")] == [order.order_id]

    def test_unknown_branch(self, ws, make_order):
        with pytest.raises(NotFound):
            ws.route_order(make_order(branch_id="NOWHERE").order_id, "counter-1")


class TestStages:
    def test_advance_funnels_through_state_machine(self, ws, inspecting):
        with pytest.raises(InvalidTransition):
            ws.advance_stage(inspecting.order_id, W.WASHING, "lead-1")

    def test_advance_sets_staff_and_derived_stage(self, ws, services, inspecting):
        services.lifecycle.transition(inspecting.order_id, S.QUEUED, "lead-1")
        order = ws.advance_stage(inspecting.order_id, "washing", "lead-1", staff_id="STAFF-7")
        assert order.status == S.WASHING
        assert order.assigned_workstation_stage == W.WASHING
        assert order.routing_status == RoutingStatus.PROCESSING
        assert order.assigned_workstation_staff_id == "STAFF-7"
        assert [o.order_id for o in ws.assigned_to_staff("STAFF-7")] == [order.order_id]

    def test_unknown_stage(self, ws, inspecting):
        with pytest.raises(InvalidStage):
            ws.advance_stage(inspecting.order_id, "folding", "lead-1")

    def test_queue_depth(self, ws, services, inspecting, make_order):
        other = ws.route_order(make_order().order_id, "counter-1")
        services.lifecycle.transition(other.order_id, S.QUEUED, "lead-1")
        ws.advance_stage(other.order_id, W.WASHING, "lead-1")
        depth = ws.queue_depth("MAIN")
        assert depth[W.INSPECTION] == 1
        assert depth[W.WASHING] == 1
        assert depth[W.PACKAGING] == 0


class TestInspection:
    def test_complete_inspection(self, ws, inspecting, clock):
        gid = inspecting.garments[0].garment_id
        order = ws.complete_garment_inspection(inspecting.order_id, gid, "good", "inspector-1")
        garment = order.garments[0]
        assert garment.inspection_completed
        assert garment.inspection_completed_at == clock()
        assert not order.major_issues_detected
        assert not is_inspection_complete(order)

        order = ws.complete_garment_inspection(inspecting.order_id, order.garments[1].garment_id,
                                               "minor_issues", "inspector-1", notes="loose hem")
        assert is_inspection_complete(order)
        assert [o.order_id for o in ws.pending_inspection("MAIN")] == [order.order_id]

    def test_major_issues_flag_order_and_approval(self, ws, inspecting):
        gid = inspecting.garments[1].garment_id
        order = ws.complete_garment_inspection(inspecting.order_id, gid, "major_issues", "inspector-1")
        assert order.major_issues_detected

        approved = ws.approve_major_issues(inspecting.order_id, "manager-1", extra_hours=24)
        assert approved.major_issues_reviewed_by == "manager-1"
        assert approved.estimated_completion == inspecting.estimated_completion + timedelta(hours=24)

    def test_approval_without_issues(self, ws, inspecting):
        with pytest.raises(ValidationError):
            ws.approve_major_issues(inspecting.order_id, "manager-1")

    def test_bad_assessment(self, ws, inspecting):
        with pytest.raises(ValidationError):
            ws.complete_garment_inspection(inspecting.order_id, inspecting.garments[0].garment_id,
                                           "fine", "inspector-1")

    def test_unknown_garment(self, ws, inspecting):
        with pytest.raises(NotFound):
            ws.complete_garment_inspection(inspecting.order_id, "G-404", "good", "inspector-1")

    def test_requires_inspection_status(self, ws, make_order):
        order = make_order()
        with pytest.raises(InvalidStage):
            ws.complete_garment_inspection(order.order_id, order.garments[0].garment_id, "good", "inspector-1")


class TestGarmentStages:
    def test_handlers_and_durations_accumulate(self, ws, inspecting, clock):
        gid = inspecting.garments[0].garment_id
        started = clock()
        clock.advance(minutes=10)
        ws.complete_stage_for_garment(inspecting.order_id, gid, W.IRONING, "S1", "Achieng", started)
        clock.advance(minutes=5)
        order = ws.complete_stage_for_garment(inspecting.order_id, gid, "ironing", "S2", "Kamau", started)

        garment = order.garments[0]
        assert [h.uid for h in garment.stage_handlers["ironing"]] == ["S1", "S2"]
        assert garment.stage_durations["ironing"] == 600 + 900

    def test_without_start_time_records_handler_only(self, ws, inspecting):
        gid = inspecting.garments[0].garment_id
        order = ws.complete_stage_for_garment(inspecting.order_id, gid, W.WASHING, "S1", "Achieng")
        assert len(order.garments[0].stage_handlers["washing"]) == 1
        assert order.garments[0].stage_durations == {}

    def test_start_time_without_zone_is_utc(self, ws, inspecting, clock):
        gid = inspecting.garments[0].garment_id
        started = clock().replace(tzinfo=None)
        clock.advance(minutes=10)
        order = ws.complete_stage_for_garment(inspecting.order_id, gid, W.DRYING, "S1", "Achieng", started)
        assert order.garments[0].stage_durations["drying"] == 600


class TestProcessingComplete:
    def test_ready_for_return(self, ws, walk, inspecting, clock):
        walk(inspecting.order_id, S.QUEUED, S.WASHING, S.DRYING, S.IRONING, S.QUALITY_CHECK, S.PACKAGING)
        order = ws.mark_processing_complete(inspecting.order_id, "lead-1")
        assert order.status == S.QUEUED_FOR_DELIVERY
        assert order.routing_status == RoutingStatus.READY_FOR_RETURN
        assert order.earliest_delivery_time == clock() + timedelta(hours=6)

    def test_too_early(self, ws, inspecting):
        with pytest.raises(InvalidTransition):
            ws.mark_processing_complete(inspecting.order_id, "lead-1")
