"""Subscription episode scheduling, generation queue and delivery."""
