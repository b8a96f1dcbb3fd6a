"""
Request dependencies
"""

from fastapi import Request

from ..system import BankingSystem


def get_system(request: Request) -> BankingSystem:
    """The BankingSystem the application was created with"""
    return request.app.state.banking_system
