from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class ExecutionRecord(Base):
    __tablename__ = "execution_records"

    id = Column(Integer, primary_key=True)
    draft_id = Column(String(128), unique=True, nullable=False, index=True)
    user_hash = Column(String(32), nullable=True)
    mode = Column(String(16), nullable=False)
    plan_hash = Column(String(66), nullable=True)
    tx_hash = Column(String(66), nullable=True, index=True)
    status = Column(String(16), nullable=False, default="submitting")
    receipt_status = Column(String(16), nullable=True)
    block_number = Column(Integer, nullable=True)
    error = Column(Text, nullable=True)
    error_code = Column(String(32), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
