"""Scheduled (cron) agent turns."""
