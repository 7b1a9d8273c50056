# orderflow/utils/keyboards.py
from typing import Iterable
from telegram import InlineKeyboardButton, InlineKeyboardMarkup
from ..models.order import OrderStatus
from .formatters import status_display_name

class Keyboards:
    @staticmethod
    def order_actions(order_id: str, statuses: Iterable[OrderStatus],
                      can_cancel: bool = False) -> InlineKeyboardMarkup:
        """One button per status staff may move the order to"""
        keyboard = [
            [InlineKeyboardButton(
                f"➡️ {status_display_name(status)}",
                callback_data=f"advance:{order_id}:{status.value}"
            )]
            for status in statuses
        ]
        if can_cancel:
            keyboard.append([InlineKeyboardButton(
                "❌ Cancel order", callback_data=f"cancelhint:{order_id}"
            )])
        keyboard.append([InlineKeyboardButton("🔄 Refresh", callback_data=f"show:{order_id}")])
        return InlineKeyboardMarkup(keyboard)
