"""
History sync daemon package for Shelly energy meters.

Pulls stored energy history from Shelly EM / Pro 3EM devices page by page,
resumes from the last point stored in InfluxDB, and keeps one independent
sync loop with backoff per device.

CHANGELOG:
- 2026-03-02: Repurpose package for EMData history sync (STORY-101)
- 2026-02-14: Initial creation (STORY-001)

TODO:
- None
"""
