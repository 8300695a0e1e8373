"""Tests for Celery tasks."""

from unittest.mock import MagicMock, patch

import pytest


# =============================================================================
# Stale Payment Reconciliation Tests
# =============================================================================


class TestReconcileStalePaymentsTask:
    """Tests for payments.reconcile_stale_payments task."""

    def test_reconcile_stale_payments_success(self):
        """Test successful sweep returns the outcome counts."""
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.reconciliation.reconcile_stale",
                return_value={"completed": 2, "ignored": 1},
            ) as mock_run:
                with patch("app.tasks.payments.observe_job") as mock_observe:
                    from app.tasks.payments import reconcile_stale_payments

                    counts = reconcile_stale_payments(older_than_minutes=15, limit=20)

                    assert counts == {"completed": 2, "ignored": 1}
                    mock_run.assert_called_once_with(
                        mock_session, older_than_minutes=15, limit=20
                    )
                    mock_session.close.assert_called_once()
                    args = mock_observe.call_args[0]
                    assert args[0] == "reconcile_stale_payments"
                    assert args[1] == "success"

    def test_reconcile_stale_payments_exception_rollback(self):
        """Test exception triggers rollback and reports error status."""
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.reconciliation.reconcile_stale",
                side_effect=Exception("Database unavailable"),
            ):
                with patch("app.tasks.payments.observe_job") as mock_observe:
                    from app.tasks.payments import reconcile_stale_payments

                    with pytest.raises(Exception, match="Database unavailable"):
                        reconcile_stale_payments()

                    mock_session.rollback.assert_called_once()
                    mock_session.close.assert_called_once()
                    args = mock_observe.call_args[0]
                    assert args[1] == "error"


# =============================================================================
# Fulfillment Retry Tests
# =============================================================================


class TestRetryUnfulfilledPaymentsTask:
    """Tests for payments.retry_unfulfilled_payments task."""

    def test_retry_unfulfilled_payments_success(self):
        """Test successful retry sweep."""
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.reconciliation.retry_unfulfilled",
                return_value={"completed": 1},
            ) as mock_run:
                from app.tasks.payments import retry_unfulfilled_payments

                assert retry_unfulfilled_payments(limit=5) == {"completed": 1}

                mock_run.assert_called_once_with(mock_session, limit=5)
                mock_session.close.assert_called_once()

    def test_retry_unfulfilled_payments_exception_closes_session(self):
        """Test exception still closes session."""
        mock_session = MagicMock()

        with patch("app.tasks.payments.SessionLocal", return_value=mock_session):
            with patch(
                "app.tasks.payments.payments_service.reconciliation.retry_unfulfilled",
                side_effect=Exception("Retry error"),
            ):
                from app.tasks.payments import retry_unfulfilled_payments

                with pytest.raises(Exception, match="Retry error"):
                    retry_unfulfilled_payments()

                mock_session.rollback.assert_called_once()
                mock_session.close.assert_called_once()
