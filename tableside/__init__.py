"""
                Tableside Order Engine

Order and table-session lifecycle backend for dine-in restaurants:
QR table ordering, kitchen status flow, stock side effects and
dual-gateway payment reconciliation.

Author: Khalil_Bannouri
Version: 4.0.0
License: MIT
"""

__version__ = "4.0.0"
__author__ = "Khalil_Bannouri"
