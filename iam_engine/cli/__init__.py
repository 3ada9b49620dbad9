"""
CLI Package for the IAM Engine.
"""
