"""
Tests for store linking, admin review, manual-review requests and
receipt details.
"""
import pytest
from conftest import receipt_image

from loyalty.models import CustomerModel, ReceiptModel
from loyalty.pipeline import ValidationInput
from loyalty.pipeline.review import (
    ReviewError,
    approve_receipt,
    get_receipt_details,
    link_store,
    reject_receipt,
    request_manual_review,
)

PHONE = "0911000001"


@pytest.fixture()
def awaiting(pipeline, store, make_store):
    """A receipt stopped at store selection: two stores share its TIN."""
    other = make_store(name="Lewis Piassa", branch_name="Piassa")
    result = pipeline.validate(ValidationInput(image_bytes=receipt_image(1), customer_phone=PHONE))
    assert result.status == "needs_store_selection"
    return result.receipt_id, other


# =====================================================================
# Store linking
# =====================================================================
class TestLinkStore:
    def test_link_completes_validation(self, db, pipeline, storage, store, awaiting):
        receipt_id, _ = awaiting
        image_url = db.get(ReceiptModel, receipt_id).image_url

        result = link_store(db, pipeline, storage, receipt_id, store.id)
        assert result.status == "approved"
        assert result.receipt_id == receipt_id
        assert result.visit_count == 1

        row = db.get(ReceiptModel, receipt_id)
        assert row.store_id == store.id
        assert row.image_url == image_url
        assert db.query(ReceiptModel).count() == 1

    def test_receipt_not_awaiting_store(self, db, pipeline, storage, store, add_receipt):
        receipt = add_receipt(store_id=store.id)
        with pytest.raises(ReviewError) as exc:
            link_store(db, pipeline, storage, receipt.id, store.id)
        assert exc.value.message == 'Receipt is in "approved" status and does not need a store'

    def test_pending_without_store_can_link(self, db, pipeline, storage, store, add_receipt):
        path = storage.save(receipt_image(2), "unknown", "r.png")
        receipt = add_receipt(status="pending", image_url=path)
        result = link_store(db, pipeline, storage, receipt.id, store.id)
        assert result.status == "approved"

    def test_unknown_receipt(self, db, pipeline, storage, store):
        with pytest.raises(ReviewError) as exc:
            link_store(db, pipeline, storage, "missing", store.id)
        assert exc.value.status_code == 404

    def test_unknown_store(self, db, pipeline, storage, awaiting):
        receipt_id, _ = awaiting
        with pytest.raises(ReviewError) as exc:
            link_store(db, pipeline, storage, receipt_id, "missing")
        assert exc.value.status_code == 404
        assert exc.value.message == "Store not found"

    def test_inactive_store(self, db, pipeline, storage, awaiting):
        receipt_id, other = awaiting
        other.is_active = False
        db.commit()
        with pytest.raises(ReviewError) as exc:
            link_store(db, pipeline, storage, receipt_id, other.id)
        assert exc.value.message == "Store is not active"

    def test_image_missing(self, db, pipeline, storage, store, awaiting):
        receipt_id, _ = awaiting
        storage.delete(db.get(ReceiptModel, receipt_id).image_url)
        with pytest.raises(ReviewError) as exc:
            link_store(db, pipeline, storage, receipt_id, store.id)
        assert exc.value.status_code == 404
        assert exc.value.message == "Receipt image not found"


# =====================================================================
# Admin review
# =====================================================================
class TestApprove:
    def test_approve_flagged(self, db, store, rules, clock, add_receipt):
        receipt = add_receipt(status="flagged", store_id=store.id, customer_phone=PHONE)
        result = approve_receipt(db, receipt.id, "admin", rules, notes="looks fine", now=clock())
        assert result.success
        assert result.visit_count == 1
        assert result.visits_needed == 4

        db.refresh(receipt)
        assert receipt.status == "approved"
        assert receipt.reason == "Receipt manually approved by admin"
        assert receipt.reviewed_by == "admin"
        assert receipt.review_notes == "looks fine"
        assert db.query(CustomerModel).filter_by(phone=PHONE).one().total_visits == 1

    def test_approve_without_customer(self, db, store, rules, add_receipt):
        receipt = add_receipt(status="flagged_manual_requested", store_id=store.id)
        result = approve_receipt(db, receipt.id, "admin", rules)
        assert result.status == "approved"
        assert result.visit_id is None

    def test_already_decided(self, db, store, rules, add_receipt):
        receipt = add_receipt(status="rejected", store_id=store.id)
        with pytest.raises(ReviewError) as exc:
            approve_receipt(db, receipt.id, "admin", rules)
        assert exc.value.message == "Receipt already rejected"

    def test_needs_store_first(self, db, rules, add_receipt):
        receipt = add_receipt(status="flagged")
        with pytest.raises(ReviewError) as exc:
            approve_receipt(db, receipt.id, "admin", rules)
        assert exc.value.message == "Receipt has no store assigned. Link a store before approving."

    def test_duplicate_cannot_be_approved(self, db, store, rules, add_receipt):
        original = add_receipt(store_id=store.id, invoice_no="INV-1")
        copy = add_receipt(
            status="flagged", store_id=store.id, invoice_no="INV-1", duplicate_of_id=original.id
        )
        with pytest.raises(ReviewError):
            approve_receipt(db, copy.id, "admin", rules)

    def test_barcode_conflict(self, db, store, rules, add_receipt):
        add_receipt(store_id=store.id, barcode_data="4011200296908")
        flagged = add_receipt(status="flagged", store_id=store.id, barcode_data="4011200296908")
        with pytest.raises(ReviewError) as exc:
            approve_receipt(db, flagged.id, "admin", rules)
        assert exc.value.status_code == 409
        db.refresh(flagged)
        assert flagged.status == "flagged"


class TestReject:
    def test_reject(self, db, add_receipt):
        receipt = add_receipt(status="flagged")
        result = reject_receipt(db, receipt.id, "admin", "Blurry total")
        assert result.status == "rejected"
        db.refresh(receipt)
        assert receipt.reason == "Blurry total"
        assert receipt.reviewed_by == "admin"

    def test_reason_required(self, db, add_receipt):
        receipt = add_receipt(status="flagged")
        with pytest.raises(ReviewError) as exc:
            reject_receipt(db, receipt.id, "admin", "  ")
        assert exc.value.message == "Reason is required for rejection"


# =====================================================================
# Manual review and details
# =====================================================================
class TestManualReview:
    def test_request(self, db, add_receipt):
        receipt = add_receipt(status="flagged")
        updated = request_manual_review(db, receipt.id, "Total is printed clearly")
        assert updated.status == "flagged_manual_requested"
        assert updated.review_notes == "Total is printed clearly"

    def test_only_flagged(self, db, add_receipt):
        receipt = add_receipt(status="approved")
        with pytest.raises(ReviewError):
            request_manual_review(db, receipt.id)


class TestDetails:
    def test_details(self, db, store, pipeline):
        result = pipeline.validate(
            ValidationInput(image_bytes=receipt_image(1), store_id=store.id, customer_phone=PHONE)
        )
        details = get_receipt_details(db, result.receipt_id)
        assert details.status == "approved"
        assert details.invoice_no == "05507-001-0036L"
        assert details.store.name == "Lewis Bole"
        assert details.customer.phone == PHONE
        assert details.customer.total_visits == 1

    def test_missing(self, db):
        assert get_receipt_details(db, "missing") is None
