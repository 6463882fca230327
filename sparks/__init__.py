"""SPARKS therapy practice API"""
