# orderflow/handlers/__init__.py
"""Chat command handlers"""
from .base_handler import BaseHandler
from .staff_handlers import StaffHandler
from .customer_handlers import CustomerHandler

__all__ = [
    'BaseHandler',
    'StaffHandler',
    'CustomerHandler',
]
