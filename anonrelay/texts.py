WELCOME = (
    "Добро пожаловать в бот для получения анонимных вопросов и сообщений! "
    "Чтобы начать получать анонимные сообщения, поделитесь своей персональной ссылкой с друзьями: {link}"
)
YOUR_LINK = "Ваша ссылка для анонимных сообщений: {link}"
NEW_LINK = "Готово! Старая ссылка больше не работает. Новая ссылка: {link}"
HELP = (
    "Как это работает:\n"
    "— /link — показать вашу ссылку для анонимных сообщений\n"
    "— /newlink — выпустить новую ссылку (старая перестанет работать)\n"
    "— /cancel — отменить отправку\n"
    "Чтобы ответить на анонимное сообщение, нажмите «Ответить» под ним."
)

ASK_MESSAGE = (
    "Отправьте ваше анонимное сообщение "
    "(поддерживаются любые типы сообщений: текст, фото, видео, голосовые, стикеры):"
)
ASK_REPLY = "Напишите ваш ответ. Он будет доставлен анонимно."
SENT = "Ваше сообщение отправлено! А вот, кстати, ваша собственная ссылка для получения анонимных сообщений: {link}"
REPLY_SENT = "Ваш ответ отправлен!"
CANCELLED = "Отправка сообщения отменена!"
NOTHING_TO_CANCEL = "Нечего отменять."

INCOMING = "Новое анонимное сообщение:"
INCOMING_REPLY = "Ответ на ваше анонимное сообщение:"
ANSWER_TIP = "Чтобы ответить анонимно, нажмите «Ответить» под сообщением."
REPLY_READY = (
    "Следующее ваше сообщение станет ответом на это. "
    "Чтобы ответить на другое, нажмите «Ответить» под ним; /cancel — не отвечать."
)

LINK_INVALID = (
    "Ссылка недействительна! Попросите автора создать новую ссылку. "
    "А вот, кстати, ваша собственная ссылка для получения анонимных сообщений: {link}"
)
SELF_LINK = "Это ваша собственная ссылка. Отправьте её друзьям, чтобы получать анонимные сообщения."
ALREADY_WAITING = (
    "Вы уже отправили этому человеку сообщение, на которое ещё нет ответа. "
    "Дождитесь ответа, прежде чем писать снова."
)
UNEXPECTED_MESSAGE = (
    "Кажется, вы отправили сообщение, но мы его не ждали... Чтобы написать кому-то, перейдите по ссылке друга, "
    "а чтобы ответить — нажмите «Ответить» под полученным сообщением. Ваша ссылка: {link}"
)
EXCHANGE_EXPIRED = "На это сообщение больше нельзя ответить: оно устарело."
ALREADY_ANSWERED = "Вы уже ответили на это сообщение."
EXPIRED = "Время ожидания истекло, начните заново."
UNKNOWN_COMMAND = "Неизвестная команда! Попробуйте /start"
UNSUPPORTED = "Такое сообщение переслать не получится."
TRY_LATER = "Сервис временно недоступен, попробуйте позже."
FAILURE = "Произошла внутренняя ошибка. Попробуйте начать заново: /start"
NOT_DELIVERED = "Не удалось доставить сообщение: получатель недоступен. Попробуйте позже."

STATS = "Пользователей: {users}\nАктивных ссылок: {active_tokens}\nОткрытых диалогов: {open_exchanges}"
NOT_ALLOWED = "Команда доступна только администраторам."
STARTED = "✅ Bot запущен"
