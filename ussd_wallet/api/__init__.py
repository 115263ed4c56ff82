"""HTTP surface: USSD gateway callback, auth, transactions and webhooks."""
