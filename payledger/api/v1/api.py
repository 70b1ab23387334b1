from fastapi import APIRouter
from payledger.api.v1.endpoints import admin, clients, invoices, payments

api_router = APIRouter()

api_router.include_router(payments.router, prefix="/payments", tags=["payments"])
api_router.include_router(clients.router, prefix="/clients", tags=["clients"])
api_router.include_router(invoices.router, prefix="/invoices", tags=["invoices"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
