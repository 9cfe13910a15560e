"""
Tests for the audit trail.
"""

from tests.fakes import T0, environment, run


class TestAuditService:
    """Tests for writing and filtering audit entries."""

    def test_log_and_filter(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                await env.audit.log_action(1, None, 5, "submission_saved", {"tag": "alpha"})
                env.clock.advance(10)
                await env.audit.log_action(1, 999, 5, "tag_change_denied", {"request_id": "r1"})
                await env.audit.log_action(2, None, 5, "submission_saved")

                entries = await env.audit.get_audit_logs(1)
                assert [e["action"] for e in entries] == ["tag_change_denied", "submission_saved"]
                assert entries[0]["actor_id"] == 999
                assert entries[0]["created_ts"] == T0 + 10
                assert entries[1]["actor_id"] is None
                assert entries[1]["meta"] == {"tag": "alpha"}

                assert len(await env.audit.get_audit_logs(1, actor_id=999)) == 1
                assert len(await env.audit.get_audit_logs(1, since_ts=T0 + 1)) == 1
                assert await env.audit.get_audit_logs(1, target_user_id=6) == []

        run(scenario())
