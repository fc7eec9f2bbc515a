from matching import visible_requests
from schemas import PickupRequest


def make(waste_type, status="pending", rid=None):
    return PickupRequest(id=rid or f"{waste_type}-{status}", citizen_id="c1", waste_type=waste_type,
                         weight_category="small", status=status)


PENDING = [make("plastic", rid="p1"), make("paper"), make("plastic", rid="p2"), make("glass")]


def test_empty_declaration_sees_everything():
    assert visible_requests(set(), PENDING) == PENDING
    assert visible_requests(None, PENDING) == PENDING


def test_plastic_vendor_sees_only_plastic():
    visible = visible_requests({"plastic"}, PENDING)
    assert all(r.waste_type == "plastic" for r in visible)
    assert [r.id for r in visible] == ["p1", "p2"]


def test_several_types_keep_input_order():
    visible = visible_requests(["glass", "paper"], PENDING)
    assert [r.waste_type for r in visible] == ["paper", "glass"]


def test_no_match_gives_empty_board():
    assert visible_requests({"metal"}, PENDING) == []


def test_non_pending_requests_are_never_visible():
    requests = PENDING + [make("plastic", status="accepted"), make("plastic", status="completed")]
    assert visible_requests({"plastic"}, requests) == [PENDING[0], PENDING[2]]
    assert len(visible_requests(set(), requests)) == len(PENDING)
