"""
Updates Module

Upstream release tracking and update rollout for compose stacks.

Architecture:
- version_helper: tolerant version ordering and tag pattern synthesis
- repository_resolver: discovers the GitHub repository behind an image
- version_resolver: fetches, filters and analyzes newer releases
- update_planner: turns a target release into a text patch and applies it
- update_checker: periodic sweep, notifications and auto-updates
"""
