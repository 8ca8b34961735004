import logging

import pytest

from portier.core.logging_config import anonymise
from portier.services.notifications import DefaultNotificationSender


@pytest.mark.parametrize("recipient, kind", [("hana@example.com", "email"), ("+250788123456", "phone")])
async def test_codes_never_reach_the_logs(caplog, recipient, kind):
    with caplog.at_level(logging.DEBUG):
        await DefaultNotificationSender().send_verification_code(
            recipient, kind, "482913", language="en", expires_minutes=10
        )

    assert caplog.records
    assert "482913" not in caplog.text
    assert recipient not in caplog.text
    assert anonymise(recipient) in caplog.text
