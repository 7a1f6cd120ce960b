"""
API orchestration boundary for the turn audio pipeline.

Design intent:
- Expose thin, typed endpoints mirroring the reconstruction start/poll/status flow.
- Map missing conversations to 404 and provider outages to 502.
"""
