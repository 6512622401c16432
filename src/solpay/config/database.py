from pydantic import BaseModel


class DatabaseSettings(BaseModel):
    url: str = "sqlite:///./solpay.db"
    echo: bool = False
