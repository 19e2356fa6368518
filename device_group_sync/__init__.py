"""
Device Group Sync - Synchronize directory group membership from device inventory.

This package expands nested directory groups, cross-references their users and
devices against managed device inventory, filters devices by OS version and
synchronizes the resulting users and/or devices into a target group.
"""

__version__ = "1.0.0"
__author__ = "Device Group Sync Team"
