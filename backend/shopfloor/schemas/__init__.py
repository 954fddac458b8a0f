"""Pydantic schemas for operation inputs and results"""
