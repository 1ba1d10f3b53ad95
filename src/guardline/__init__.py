"""
Guardline - Citizen Safety Backend

Emergency response subsystem: SOS alerts that reach responders in near
real time, and live location sharing between users and responders.
"""

__version__ = "1.0.0"
__author__ = "Guardline Development Team"
