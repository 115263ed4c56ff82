"""Clients for the systems the wallet depends on: custody, settlement providers, SMS."""
