"""Mercado Pago integration: HTTP client, OAuth, credentials, attempts and webhooks"""
