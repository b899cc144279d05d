"""Tests for reply delivery."""

from unittest.mock import MagicMock

import pytest

from replygate.errors import CollaboratorError, DeliveryFailure
from replygate.stages.delivery import ChannelDirectory, Deliverer, reply_subject


@pytest.mark.parametrize("subject,expected", [
    ("Where is my order?", "Re: Where is my order?"),
    ("Re: Where is my order?", "Re: Where is my order?"),
    ("RE:Refund", "RE:Refund"),
    ("", "Re: Your message"),
    (None, "Re: Your message"),
])
def test_reply_subject(subject, expected):
    assert reply_subject(subject) == expected


def test_channel_created_once_per_account():
    factory = MagicMock(side_effect=lambda account_id: MagicMock(name=account_id))
    directory = ChannelDirectory(factory)

    first = directory.channel_for("acct-1")
    assert directory.channel_for("acct-1") is first
    assert directory.channel_for("acct-2") is not first
    assert factory.call_count == 2


def test_registered_channel_bypasses_factory():
    factory = MagicMock()
    channel = MagicMock()
    directory = ChannelDirectory(factory)
    directory.register("acct-1", channel)

    assert directory.channel_for("acct-1") is channel
    factory.assert_not_called()


def test_missing_mailbox_is_delivery_failure():
    directory = ChannelDirectory(MagicMock(side_effect=CollaboratorError("no token for acct-1")))
    with pytest.raises(DeliveryFailure, match="No mailbox available"):
        directory.channel_for("acct-1")


def test_deliver_sends_reply_subject():
    channel = MagicMock()
    channel.send.return_value = "gmail-123"
    deliverer = Deliverer(ChannelDirectory(lambda account_id: channel))

    sent_id = deliverer.deliver("acct-1", "jane.doe@shopper.io", "Where is my order?", "Body")

    assert sent_id == "gmail-123"
    channel.send.assert_called_once_with(
        "acct-1", "jane.doe@shopper.io", "Re: Where is my order?", "Body",
    )


@pytest.mark.parametrize("error", [DeliveryFailure("550 rejected"), CollaboratorError("timeout")])
def test_send_failure_not_retried(error):
    channel = MagicMock()
    channel.send.side_effect = error
    deliverer = Deliverer(ChannelDirectory(lambda account_id: channel))

    with pytest.raises(DeliveryFailure):
        deliverer.deliver("acct-1", "jane.doe@shopper.io", "Hi", "Body")

    assert channel.send.call_count == 1
