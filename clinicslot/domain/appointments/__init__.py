"""Appointments domain - booking, lifecycle, cancellation and reschedule"""
