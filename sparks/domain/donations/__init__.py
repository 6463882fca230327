"""Donations domain - PayHere donation checkout, notification handling and admin tooling"""
