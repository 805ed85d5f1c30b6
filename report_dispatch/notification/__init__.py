"""Notification delivery package.

Renders consolidated report card emails per recipient and delivers them
through an SMTP mail transport.
"""
