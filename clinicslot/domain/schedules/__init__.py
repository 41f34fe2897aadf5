"""Schedules domain - weekly availability and date overrides per doctor"""
