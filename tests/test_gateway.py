import pytest
from telegram.error import BadRequest, Forbidden, NetworkError, RetryAfter, TimedOut

from anonrelay.commands import Button, CommandKind, OutboundCommand, reply_button
from anonrelay.gateway import TelegramGateway, markup_for

from .conftest import FakeBot


def command(chat_id=1, buttons=(), kind=CommandKind.RELAY, text="hello", **kwargs):
    return OutboundCommand(chat_id=chat_id, kind=kind, text=text, buttons=buttons, **kwargs)


def test_markup_for_buttons():
    assert markup_for(command()) is None

    markup = markup_for(command(buttons=(reply_button("ex1"), Button("Отмена", "cancel"))))
    row = markup.inline_keyboard[0]
    assert [b.callback_data for b in row] == ["reply:ex1", "cancel"]


async def test_send_plain():
    bot = FakeBot()
    assert await TelegramGateway(bot, backoff=0).send(command(5))
    assert bot.sent[0][:2] == (5, "hello")


async def test_media_is_copied_with_reply_button():
    bot = FakeBot()
    media = command(5, text="", buttons=(reply_button("ex1"),), copy_from=(9, 77))

    assert await TelegramGateway(bot, backoff=0).send(media)

    assert bot.sent == []
    ((chat_id, from_chat_id, message_id, markup),) = bot.copied
    assert (chat_id, from_chat_id, message_id) == (5, 9, 77)
    assert markup.inline_keyboard[0][0].callback_data == "reply:ex1"


async def test_retries_flood_control_and_network_errors():
    bot = FakeBot(RetryAfter(0), TimedOut(), NetworkError("reset"))
    assert await TelegramGateway(bot, retries=3, backoff=0).send(command())
    assert len(bot.sent) == 1


async def test_gives_up_after_retries():
    bot = FakeBot(*[NetworkError("down")] * 3)
    assert not await TelegramGateway(bot, retries=2, backoff=0).send(command())
    assert bot.sent == []


@pytest.mark.parametrize("error", [Forbidden("bot was blocked by the user"), BadRequest("chat not found")])
async def test_permanent_errors_are_not_retried(error):
    bot = FakeBot(error)
    assert not await TelegramGateway(bot, retries=3, backoff=0).send(command())
    assert bot.failures == [] and bot.sent == []


async def test_deliver_keeps_order_and_counts():
    bot = FakeBot(Forbidden("blocked"))
    notices = [command(chat, kind=CommandKind.GUIDANCE) for chat in (1, 2, 3)]

    report = await TelegramGateway(bot, backoff=0).deliver(notices)

    assert report.delivered == 2
    assert report.failed is None
    assert [chat for chat, _, _ in bot.sent] == [2, 3]


async def test_failed_relay_stops_the_batch():
    bot = FakeBot(blocked={1})
    relayed = command(1, exchange_id="ex1")
    batch = [relayed, command(1, kind=CommandKind.GUIDANCE), command(2, kind=CommandKind.CONFIRMATION)]

    report = await TelegramGateway(bot, backoff=0).deliver(batch)

    assert report.failed == relayed
    assert report.delivered == 0
    assert bot.sent == []
