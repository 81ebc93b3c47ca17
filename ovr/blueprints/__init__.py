"""
OVR Tracker
Blueprint registry.
"""
