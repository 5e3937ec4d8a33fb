"""Pydantic data models for plans, subscriptions, usage, payments, media and notifications."""
