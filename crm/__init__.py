"""
📇 Recruit CRM
--------------
Recruiting pipeline backend: stages, templated SMS follow-ups, the periodic
delivery loop and the inbound SMS webhook.

Serve with ``uvicorn crm.main:app``.
"""
