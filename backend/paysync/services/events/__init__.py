"""Domain event log and dispatcher"""
