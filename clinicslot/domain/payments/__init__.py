"""Payments domain - Dodo Payments checkout, polling, refunds and webhooks"""
