"""Payments domain - PayHere session checkout and notification reconciliation"""
