"""
Guardline services
"""
