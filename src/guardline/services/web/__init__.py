"""
Web API Module
"""
