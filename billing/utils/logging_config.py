# donation_billing/billing/utils/logging_config.py
import logging
import os

from billing.config import LOG_PATH


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    # Базовая конфигурация: логи записываются в файл
    os.makedirs(os.path.dirname(LOG_PATH), exist_ok=True)
    logging.basicConfig(
        filename=LOG_PATH,
        level=level,
        format='%(asctime)s %(levelname)s: %(message)s',
        filemode='a'
    )

    # Получаем корневой логгер
    logger = logging.getLogger()

    # Создаём обработчик для вывода в консоль
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_formatter = logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s')
    console_handler.setFormatter(console_formatter)

    # Добавляем консольный обработчик к логгеру
    logger.addHandler(console_handler)
    return logger
