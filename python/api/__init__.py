"""REST API for supplier screening and ownership discovery"""
