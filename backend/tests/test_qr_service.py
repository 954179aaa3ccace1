# Overview: Pytest coverage for QR identity binding.

import pytest

from sokonet.models import QRToken
from sokonet.services import order_service, qr_service
from sokonet.services.qr_service import (
    CODE_ALPHABET,
    AlreadyBound,
    DuplicateBinding,
    InvalidToken,
    NotBound,
    QRTokenNotFound,
    TokenInUse,
)
from sokonet.validation import NotFoundError, ValidationError


class TestBind:
    def test_bind_unbound_token(self, db_session, unbound_token, customer):
        token = qr_service.bind(unbound_token.id, customer.id, assigned_by=77)

        assert token.user_id == customer.id
        assert token.assigned_by == 77
        assert token.assigned_at is not None

    def test_bind_already_bound(self, db_session, token, other_customer):
        with pytest.raises(AlreadyBound):
            qr_service.bind(token.id, other_customer.id)

        assert db_session.get(QRToken, token.id).user_id != other_customer.id

    def test_one_token_per_user_per_business(self, db_session, token, unbound_token, customer):
        with pytest.raises(DuplicateBinding) as exc:
            qr_service.bind(unbound_token.id, customer.id)

        assert exc.value.details["qr_token_id"] == token.id
        assert db_session.get(QRToken, unbound_token.id).user_id is None

    def test_same_user_other_business_allowed(self, db_session, token, other_business, customer):
        foreign = QRToken(business_id=other_business.id, code="QR000001")
        db_session.add(foreign)
        db_session.commit()

        bound = qr_service.bind(foreign.id, customer.id)
        assert bound.user_id == customer.id

    def test_unknown_token(self, db_session, customer):
        with pytest.raises(QRTokenNotFound):
            qr_service.bind(9999, customer.id)

    def test_unknown_user(self, db_session, unbound_token):
        with pytest.raises(NotFoundError):
            qr_service.bind(unbound_token.id, 9999)


class TestUnbind:
    def test_unbind_bound_token(self, db_session, token):
        unbound = qr_service.unbind(token.id)

        assert unbound.user_id is None
        assert unbound.assigned_at is None

    def test_unbind_unbound_token(self, db_session, unbound_token):
        with pytest.raises(NotBound):
            qr_service.unbind(unbound_token.id)

    def test_rebind_after_unbind(self, db_session, token, other_customer):
        qr_service.unbind(token.id)
        rebound = qr_service.bind(token.id, other_customer.id)
        assert rebound.user_id == other_customer.id


class TestResolve:
    def test_resolve_bound_token(self, db_session, token, business, customer):
        assert qr_service.resolve(token.id) == (business.id, customer.id)

    def test_unbound_token_is_invalid(self, db_session, unbound_token):
        with pytest.raises(InvalidToken):
            qr_service.resolve(unbound_token.id)

    def test_inactive_token_is_invalid(self, db_session, token):
        qr_service.set_active(token.id, False)
        with pytest.raises(InvalidToken):
            qr_service.resolve(token.id)

    def test_missing_token_is_invalid(self, db_session):
        with pytest.raises(InvalidToken):
            qr_service.resolve(9999)


class TestGenerateTokens:
    def test_batch_has_unique_codes(self, db_session, business):
        tokens = qr_service.generate_tokens(business.id, 25)

        codes = [t.code for t in tokens]
        assert len(set(codes)) == 25
        assert all(len(code) == 8 for code in codes)
        assert all(ch in CODE_ALPHABET for code in codes for ch in code)
        assert all(t.user_id is None and t.is_active for t in tokens)

    @pytest.mark.parametrize("quantity", [0, 101, "ten", None])
    def test_quantity_bounds(self, db_session, business, quantity):
        with pytest.raises(ValidationError):
            qr_service.generate_tokens(business.id, quantity)

    def test_unknown_business(self, db_session):
        with pytest.raises(NotFoundError):
            qr_service.generate_tokens(9999, 1)


class TestScansAndStats:
    def test_record_scan_increments(self, db_session, business, token):
        qr_service.record_scan(business.id, token.code.lower())
        scanned = qr_service.record_scan(business.id, token.code)

        assert scanned.scan_count == 2
        assert scanned.last_scanned_at is not None

    def test_scan_code_of_other_business(self, db_session, other_business, token):
        with pytest.raises(QRTokenNotFound):
            qr_service.record_scan(other_business.id, token.code)

    def test_set_active_requires_bool(self, db_session, token):
        with pytest.raises(ValidationError):
            qr_service.set_active(token.id, "no")

    def test_set_active_scoped_to_business(self, db_session, other_business, token):
        with pytest.raises(QRTokenNotFound):
            qr_service.set_active(token.id, False, business_id=other_business.id)

    def test_token_stats(self, db_session, business, token, unbound_token):
        qr_service.record_scan(business.id, token.code)
        qr_service.record_scan(business.id, token.code)
        qr_service.record_scan(business.id, unbound_token.code)

        stats = qr_service.get_token_stats(business.id)

        assert stats["total"] == 2
        assert stats["assigned"] == 1
        assert stats["unassigned"] == 1
        assert stats["active"] == 2
        assert stats["total_scans"] == 3
        assert stats["avg_scans_per_code"] == 1.5
        assert stats["printed"] == 0


class TestListTokens:
    def test_filters(self, db_session, business, token, unbound_token):
        qr_service.set_active(unbound_token.id, False)

        assigned = qr_service.list_tokens(business.id, is_assigned=True)["tokens"]
        unassigned = qr_service.list_tokens(business.id, is_assigned=False)["tokens"]
        inactive = qr_service.list_tokens(business.id, is_active=False)["tokens"]

        assert [t.id for t in assigned] == [token.id]
        assert [t.id for t in unassigned] == [unbound_token.id]
        assert [t.id for t in inactive] == [unbound_token.id]

    def test_search_matches_part_of_code(self, db_session, business, token, unbound_token):
        result = qr_service.list_tokens(business.id, search="0002")
        assert [t.code for t in result["tokens"]] == ["QR000002"]

        result = qr_service.list_tokens(business.id, search="qr%")
        assert result["tokens"] == []

    def test_pagination_and_scope(self, db_session, business, other_business):
        qr_service.generate_tokens(business.id, 5)
        qr_service.generate_tokens(other_business.id, 2)

        result = qr_service.list_tokens(business.id, page=2, per_page=2)

        assert len(result["tokens"]) == 2
        assert result["pagination"] == {"page": 2, "per_page": 2, "count": 5, "pages": 3}
        assert all(t.business_id == business.id for t in result["tokens"])


class TestMarkPrinted:
    def test_marks_tokens_and_updates_stats(self, db_session, business, token, unbound_token):
        printed = qr_service.mark_printed(business.id, [unbound_token.id])

        assert [t.id for t in printed] == [unbound_token.id]
        assert printed[0].is_printed is True
        assert printed[0].printed_at is not None

        stats = qr_service.get_token_stats(business.id)
        assert stats["printed"] == 1
        assert stats["unprinted"] == 1
        assert [t.id for t in qr_service.list_tokens(business.id, is_printed=False)["tokens"]] == [token.id]

    def test_tokens_of_other_business_ignored(self, db_session, business, other_business, token):
        with pytest.raises(QRTokenNotFound):
            qr_service.mark_printed(other_business.id, [token.id])
        db_session.expire_all()
        assert db_session.get(QRToken, token.id).is_printed is False

    @pytest.mark.parametrize("token_ids", [None, [], "1,2", [0], [True]])
    def test_rejects_bad_ids(self, db_session, business, token_ids):
        with pytest.raises(ValidationError):
            qr_service.mark_printed(business.id, token_ids)


class TestDeleteToken:
    def test_delete_unassigned(self, db_session, business, unbound_token):
        token_id = unbound_token.id

        qr_service.delete_token(token_id, business_id=business.id)

        assert db_session.get(QRToken, token_id) is None

    def test_assigned_token_rejected(self, db_session, business, token):
        with pytest.raises(AlreadyBound):
            qr_service.delete_token(token.id, business_id=business.id)
        assert db_session.get(QRToken, token.id) is not None

    def test_token_with_orders_rejected(self, db_session, business, token, widget):
        order_service.create_order(token.id, [{"product_id": widget.id, "quantity": 1}])
        qr_service.unbind(token.id)

        with pytest.raises(TokenInUse):
            qr_service.delete_token(token.id, business_id=business.id)

    def test_scoped_to_business(self, db_session, other_business, unbound_token):
        with pytest.raises(QRTokenNotFound):
            qr_service.delete_token(unbound_token.id, business_id=other_business.id)
