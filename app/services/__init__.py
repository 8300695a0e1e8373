"""Service package exports.

Gateway adapters live at the top level (``mpesa``, ``pesapal``, ``paystack``);
the reconciliation state machine lives in ``app.services.payments``.
"""
