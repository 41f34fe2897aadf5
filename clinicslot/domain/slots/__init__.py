"""Slots domain - derives bookable slots from weekly schedules and date overrides"""
