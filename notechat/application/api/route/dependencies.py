from fastapi import Request

from notechat.application.container import NotechatServices


def get_services(request: Request) -> NotechatServices:
    """The service container attached to the running app"""
    return request.app.state.services
