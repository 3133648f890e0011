from enum import Enum


class Task(str, Enum):
    DELIVER_REQUEST = "deliver_request"
