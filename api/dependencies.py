from fastapi import Request

from kb_chat.services import Services


def get_services(request: Request) -> Services:
    return request.app.state.services
