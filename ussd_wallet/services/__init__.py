"""Business services: money movement, reconciliation and the USSD turn handler."""
