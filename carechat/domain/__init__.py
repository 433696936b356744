"""Domain packages"""
