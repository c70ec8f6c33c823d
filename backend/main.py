import logging
import math
import re
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Generic, TypeVar

import bcrypt
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, StrictInt
from pydantic.alias_generators import to_camel
from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from backend.db import (
    build_engine,
    check_connection,
    custom_categories,
    expenses,
    init_db,
    salary_reminders,
    users,
)
from backend.errors import (
    AuthenticationFailedError,
    ConflictError,
    InternalFault,
    NotFoundError,
    UnauthenticatedError,
    ValidationError,
    register_error_handlers,
)
from backend.expense_summary import ExpenseEntry, monthly_breakdown, period_bounds, summarize_expenses
from backend.insights_engine import ExpenseRecord, InsightsProvider, build_insights_provider
from backend.observability import client_ip, log_requests, setup_logging
from backend.rate_limiter import API_SCOPE, AUTH_SCOPE, InMemoryRateLimiter, rate_limit
from backend.salary_reminder import ReminderCalculationError, SalaryReminderDue, next_salary_date
from backend.session_tokens import (
    SessionCookiePolicy,
    SessionIdentity,
    SessionTokenService,
    find_session_token,
)
from backend.settings import Settings, get_settings, resolve_jwt_secret

logger = logging.getLogger(__name__)

T = TypeVar("T")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_STRENGTH_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")
BCRYPT_MAX_BYTES = 72
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MAX_AMOUNT = Decimal("99999999.99")
INVALID_CREDENTIALS = "Invalid email or password"
NOT_AUTHENTICATED = "Authentication required. Please login again."


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiResponse(CamelModel, Generic[T]):
    success: bool = True
    data: T | None = None
    message: str | None = None


def sanitize_string(value: str) -> str:
    return CONTROL_CHARACTERS.sub("", value).strip()


def normalize_email(value: str) -> str:
    normalized = sanitize_string(value).lower()
    if not EMAIL_PATTERN.match(normalized):
        raise ValueError("Please provide a valid email address")
    if len(normalized) > 255:
        raise ValueError("Email must be less than 255 characters")
    return normalized


class RegisterPayload(CamelModel):
    name: str
    email: str
    password: str

    @classmethod
    def validate_payload(cls, payload: "RegisterPayload") -> "RegisterPayload":
        errors = []
        payload.name = sanitize_string(payload.name)
        if not 1 <= len(payload.name) <= 100:
            errors.append("Name must be between 1 and 100 characters")
        try:
            payload.email = normalize_email(payload.email)
        except ValueError as exc:
            errors.append(str(exc))
        if not 6 <= len(payload.password) <= 100:
            errors.append("Password must be between 6 and 100 characters")
        elif not PASSWORD_STRENGTH_PATTERN.match(payload.password):
            errors.append(
                "Password must contain at least one uppercase letter, "
                "one lowercase letter, and one number"
            )
        if errors:
            raise ValueError(", ".join(errors))
        return payload


class LoginPayload(CamelModel):
    email: str
    password: str

    @classmethod
    def validate_payload(cls, payload: "LoginPayload") -> "LoginPayload":
        payload.email = normalize_email(payload.email)
        if not payload.password:
            raise ValueError("Password is required")
        return payload


class UserResponse(CamelModel):
    id: int
    name: str
    email: str


class LoginResponse(CamelModel):
    token: str
    user: UserResponse


class ExpensePayload(CamelModel):
    amount: Decimal
    category: str
    note: str
    date: date

    @classmethod
    def validate_payload(cls, payload: "ExpensePayload") -> "ExpensePayload":
        errors = []
        if payload.amount <= 0:
            errors.append("Amount must be greater than 0")
        elif payload.amount > MAX_AMOUNT:
            errors.append("Amount must not exceed 99999999.99")
        elif payload.amount != payload.amount.quantize(Decimal("0.01")):
            errors.append("Amount must have at most 2 decimal places")
        payload.category = sanitize_string(payload.category)
        if not payload.category:
            errors.append("Category cannot be empty")
        elif len(payload.category) > 50:
            errors.append("Category must be less than 50 characters")
        payload.note = sanitize_string(payload.note)
        if not payload.note:
            errors.append("Note cannot be empty")
        elif len(payload.note) > 500:
            errors.append("Note must be less than 500 characters")
        if errors:
            raise ValueError(", ".join(errors))
        return payload


class ExpenseResponse(CamelModel):
    id: int
    amount: Decimal
    category: str
    note: str
    date: date
    created_at: datetime | None = None


class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    total_pages: int


class ExpensePage(CamelModel):
    expenses: list[ExpenseResponse]
    pagination: Pagination


class ExpenseSummaryResponse(CamelModel):
    total: Decimal
    category_totals: dict[str, Decimal]
    count: int


class MonthlyTotalResponse(CamelModel):
    month: int
    total: Decimal
    count: int


class YearlySummaryResponse(CamelModel):
    year: int
    total: Decimal
    months: list[MonthlyTotalResponse]


class CategoryPayload(CamelModel):
    category_name: str

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.category_name = sanitize_string(payload.category_name)
        if not payload.category_name:
            raise ValueError("Category name cannot be empty")
        if len(payload.category_name) > 50:
            raise ValueError("Category name must be less than 50 characters")
        return payload


class CategoryResponse(CamelModel):
    category_name: str


class SalaryReminderPayload(CamelModel):
    salary_date: StrictInt | None = None

    @classmethod
    def validate_payload(cls, payload: "SalaryReminderPayload") -> "SalaryReminderPayload":
        if payload.salary_date is None:
            raise ValueError(
                "Salary date is required and must be a number (day of month, 1-31)"
            )
        if not 1 <= payload.salary_date <= 31:
            raise ValueError("Salary date must be between 1 and 31")
        return payload


class SalaryReminderResponse(CamelModel):
    id: int
    salary_date: int
    next_salary_date: date
    days_remaining: int
    status: str
    label: str
    created_at: datetime | None = None
    updated_at: datetime | None = None


class InsightExpensePayload(CamelModel):
    amount: Decimal
    category: str
    note: str
    date: date


class InsightsPayload(CamelModel):
    expenses: list[InsightExpensePayload] | None = None

    @classmethod
    def validate_payload(cls, payload: "InsightsPayload") -> "InsightsPayload":
        if payload.expenses is None:
            raise ValueError("Expenses array is required")
        if not payload.expenses:
            raise ValueError("Expenses array cannot be empty")
        errors = []
        for index, expense in enumerate(payload.expenses):
            if expense.amount <= 0:
                errors.append(f"Expense at index {index}: amount must be a positive number")
            if not expense.category.strip():
                errors.append(
                    f"Expense at index {index}: category is required and must be a non-empty string"
                )
            if not expense.note.strip():
                errors.append(
                    f"Expense at index {index}: note is required and must be a non-empty string"
                )
        if errors:
            raise ValueError("; ".join(errors))
        return payload


class InsightResponse(CamelModel):
    type: str
    title: str
    description: str
    category: str | None = None
    severity: str | None = None


class InsightsResponse(CamelModel):
    insights: list[InsightResponse]
    summary: str
    generated_at: datetime
    source: str


def hash_password(password: str) -> str:
    return bcrypt.hashpw(_password_bytes(password), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(_password_bytes(password), hashed_password.encode("utf-8"))


def _password_bytes(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def get_engine(request: Request) -> Engine:
    return request.app.state.engine


def get_token_service(request: Request) -> SessionTokenService:
    return request.app.state.tokens


def get_cookie_policy(request: Request) -> SessionCookiePolicy:
    return request.app.state.cookie_policy


def get_insights_provider(request: Request) -> InsightsProvider:
    return request.app.state.insights


def get_today(request: Request) -> date:
    return request.app.state.today()


def require_identity(request: Request) -> SessionIdentity:
    tokens: SessionTokenService = request.app.state.tokens
    cookie_policy: SessionCookiePolicy = request.app.state.cookie_policy
    try:
        found = find_session_token(
            request.headers.get("authorization"),
            request.cookies.get(cookie_policy.name),
        )
        identity = tokens.verify(found.token) if found else None
    except Exception as exc:
        logger.error(
            f"Authentication error: {exc}",
            exc_info=exc,
            extra={"ip": client_ip(request), "path": request.url.path},
        )
        raise AuthenticationFailedError() from exc

    if identity is None:
        if found is not None:
            logger.warning(
                "Invalid token attempt",
                extra={"ip": client_ip(request), "path": request.url.path},
            )
        raise UnauthenticatedError(NOT_AUTHENTICATED)
    return identity


def to_user_response(row: RowMapping) -> UserResponse:
    return UserResponse(id=row["id"], name=row["name"], email=row["email"])


def to_expense_response(row: RowMapping) -> ExpenseResponse:
    return ExpenseResponse(
        id=row["id"],
        amount=row["amount"],
        category=row["category"],
        note=row["note"],
        date=row["date"],
        created_at=row["created_at"],
    )


def to_salary_response(row: RowMapping, due: SalaryReminderDue) -> SalaryReminderResponse:
    return SalaryReminderResponse(
        id=row["id"],
        salary_date=row["salary_day"],
        next_salary_date=due.next_date,
        days_remaining=due.days_remaining,
        status=due.status,
        label=due.label,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def issue_session(
    response: Response,
    tokens: SessionTokenService,
    cookie_policy: SessionCookiePolicy,
    user: UserResponse,
) -> LoginResponse:
    token = tokens.issue(user.id, user.email)
    cookie_policy.attach(response, token)
    return LoginResponse(token=token, user=user)


def register_user(engine: Engine, payload: RegisterPayload) -> UserResponse:
    hashed_password = hash_password(payload.password)
    stmt = (
        insert(users)
        .values(name=payload.name, email=payload.email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.name, users.c.email)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise ConflictError("User with this email already exists") from exc
    if not row:
        raise InternalFault("Failed to create user.")
    return to_user_response(row)


def authenticate_user(engine: Engine, payload: LoginPayload) -> UserResponse:
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == payload.email)).mappings().first()
    if not row or not verify_password(payload.password, row["hashed_password"]):
        raise UnauthenticatedError(INVALID_CREDENTIALS)
    return to_user_response(row)


def fetch_salary_reminder(conn: Connection, user_id: int) -> RowMapping | None:
    return (
        conn.execute(select(salary_reminders).where(salary_reminders.c.user_id == user_id))
        .mappings()
        .first()
    )


def _write_salary_reminder(conn: Connection, user_id: int, salary_day: int) -> tuple[RowMapping, bool]:
    result = conn.execute(
        update(salary_reminders)
        .where(salary_reminders.c.user_id == user_id)
        .values(salary_day=salary_day, updated_at=func.now())
    )
    created = result.rowcount == 0
    if created:
        conn.execute(insert(salary_reminders).values(user_id=user_id, salary_day=salary_day))
    return fetch_salary_reminder(conn, user_id), created


def upsert_salary_reminder(engine: Engine, user_id: int, salary_day: int) -> tuple[RowMapping, bool]:
    """Create or update the user's reminder; a lost insert race becomes an update."""
    try:
        with engine.begin() as conn:
            return _write_salary_reminder(conn, user_id, salary_day)
    except IntegrityError:
        with engine.begin() as conn:
            return _write_salary_reminder(conn, user_id, salary_day)


def delete_salary_reminder(engine: Engine, user_id: int) -> bool:
    with engine.begin() as conn:
        result = conn.execute(
            delete(salary_reminders).where(salary_reminders.c.user_id == user_id)
        )
    return result.rowcount > 0


def compute_due(row: RowMapping, today: date, user_id: int) -> SalaryReminderDue:
    try:
        due = next_salary_date(row["salary_day"], today)
    except ReminderCalculationError as exc:
        logger.error(
            f"Salary reminder calculation failed: {exc}",
            extra={"user_id": user_id, "salary_day": row["salary_day"]},
        )
        raise InternalFault("Failed to calculate next salary date") from exc
    if due is None:
        logger.error(
            "Stored salary day is out of range",
            extra={"user_id": user_id, "salary_day": row["salary_day"]},
        )
        raise InternalFault("Stored salary reminder is invalid")
    return due


def expense_period_conditions(user_id: int, year: int | None, month: int | None) -> list:
    conditions = [expenses.c.user_id == user_id]
    if month is not None and year is None:
        raise ValidationError("Month filter requires a year")
    if year is not None:
        try:
            start_date, end_date = period_bounds(year, month)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        conditions.extend([expenses.c.date >= start_date, expenses.c.date <= end_date])
    return conditions


def fetch_expense_entries(engine: Engine, conditions: list) -> list[ExpenseEntry]:
    with engine.begin() as conn:
        rows = conn.execute(
            select(expenses.c.amount, expenses.c.category, expenses.c.date, expenses.c.note)
            .where(*conditions)
        ).mappings().all()
    return [
        ExpenseEntry(amount=row["amount"], category=row["category"], date=row["date"], note=row["note"])
        for row in rows
    ]


auth_router = APIRouter(prefix="/auth", tags=["auth"], dependencies=[Depends(rate_limit(API_SCOPE))])
expenses_router = APIRouter(
    prefix="/expenses", tags=["expenses"], dependencies=[Depends(rate_limit(API_SCOPE))]
)
categories_router = APIRouter(
    prefix="/categories", tags=["categories"], dependencies=[Depends(rate_limit(API_SCOPE))]
)
salary_router = APIRouter(prefix="/salary", tags=["salary"], dependencies=[Depends(rate_limit(API_SCOPE))])
ai_router = APIRouter(prefix="/ai", tags=["ai"], dependencies=[Depends(rate_limit(API_SCOPE))])
system_router = APIRouter(tags=["system"])


@system_router.get("/health")
def health(engine: Engine = Depends(get_engine)):
    try:
        check_connection(engine)
    except SQLAlchemyError:
        logger.exception("Health check failed")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "success": False,
                "data": {"status": "error", "database": "disconnected"},
                "error": "Database connection failed",
            },
        )
    return {
        "success": True,
        "data": {"status": "ok", "database": "connected"},
        "message": "Backend is running",
    }


@auth_router.post(
    "/register",
    response_model=ApiResponse[LoginResponse],
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit(AUTH_SCOPE))],
)
def register(
    payload: RegisterPayload,
    response: Response,
    engine: Engine = Depends(get_engine),
    tokens: SessionTokenService = Depends(get_token_service),
    cookie_policy: SessionCookiePolicy = Depends(get_cookie_policy),
) -> ApiResponse[LoginResponse]:
    try:
        payload = RegisterPayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    user = register_user(engine, payload)
    logger.info("User registered", extra={"user_id": user.id, "email": user.email})
    session = issue_session(response, tokens, cookie_policy, user)
    return ApiResponse(data=session, message="User registered successfully")


@auth_router.post(
    "/login",
    response_model=ApiResponse[LoginResponse],
    dependencies=[Depends(rate_limit(AUTH_SCOPE))],
)
def login(
    payload: LoginPayload,
    response: Response,
    engine: Engine = Depends(get_engine),
    tokens: SessionTokenService = Depends(get_token_service),
    cookie_policy: SessionCookiePolicy = Depends(get_cookie_policy),
) -> ApiResponse[LoginResponse]:
    try:
        payload = LoginPayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    user = authenticate_user(engine, payload)
    logger.info("User logged in", extra={"user_id": user.id, "email": user.email})
    session = issue_session(response, tokens, cookie_policy, user)
    return ApiResponse(data=session, message="Login successful")


@auth_router.post("/logout", response_model=ApiResponse[None])
def logout(
    response: Response, cookie_policy: SessionCookiePolicy = Depends(get_cookie_policy)
) -> ApiResponse[None]:
    cookie_policy.clear(response)
    return ApiResponse(message="Logout successful")


@auth_router.get("/me", response_model=ApiResponse[UserResponse])
def me(
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[UserResponse]:
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.id == identity.user_id)).mappings().first()
    if not row:
        raise NotFoundError("User not found")
    return ApiResponse(data=to_user_response(row))


@salary_router.get("", response_model=ApiResponse[SalaryReminderResponse])
def get_salary_reminder(
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
    today: date = Depends(get_today),
) -> ApiResponse[SalaryReminderResponse]:
    with engine.begin() as conn:
        row = fetch_salary_reminder(conn, identity.user_id)
    if not row:
        return ApiResponse(data=None, message="No salary reminder set")
    due = compute_due(row, today, identity.user_id)
    return ApiResponse(data=to_salary_response(row, due))


@salary_router.post("", response_model=ApiResponse[SalaryReminderResponse])
def set_salary_reminder(
    payload: SalaryReminderPayload,
    response: Response,
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
    today: date = Depends(get_today),
) -> ApiResponse[SalaryReminderResponse]:
    try:
        payload = SalaryReminderPayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    row, created = upsert_salary_reminder(engine, identity.user_id, payload.salary_date)
    due = compute_due(row, today, identity.user_id)
    if created:
        response.status_code = status.HTTP_201_CREATED
        message = "Salary reminder created successfully"
    else:
        message = "Salary reminder updated successfully"
    logger.info(
        message, extra={"user_id": identity.user_id, "salary_day": payload.salary_date}
    )
    return ApiResponse(data=to_salary_response(row, due), message=message)


@salary_router.delete("", response_model=ApiResponse[None])
def remove_salary_reminder(
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[None]:
    deleted = delete_salary_reminder(engine, identity.user_id)
    if deleted:
        logger.info("Salary reminder deleted", extra={"user_id": identity.user_id})
        message = "Salary reminder deleted successfully"
    else:
        logger.info(
            "Salary reminder delete requested but none existed",
            extra={"user_id": identity.user_id},
        )
        message = "Salary reminder not found (already deleted or never existed)"
    return ApiResponse(message=message)


@expenses_router.post(
    "", response_model=ApiResponse[ExpenseResponse], status_code=status.HTTP_201_CREATED
)
def create_expense(
    payload: ExpensePayload,
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[ExpenseResponse]:
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    stmt = (
        insert(expenses)
        .values(
            user_id=identity.user_id,
            amount=payload.amount,
            category=payload.category,
            note=payload.note,
            date=payload.date,
        )
        .returning(
            expenses.c.id,
            expenses.c.amount,
            expenses.c.category,
            expenses.c.note,
            expenses.c.date,
            expenses.c.created_at,
        )
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise InternalFault("Failed to create expense.")
    logger.info("Expense created", extra={"user_id": identity.user_id, "expense_id": row["id"]})
    return ApiResponse(data=to_expense_response(row), message="Expense created successfully")


@expenses_router.get("", response_model=ApiResponse[ExpensePage])
def list_expenses(
    page: int = Query(1),
    limit: int = Query(DEFAULT_PAGE_SIZE),
    year: int | None = Query(None),
    month: int | None = Query(None),
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[ExpensePage]:
    page = max(1, page)
    limit = min(MAX_PAGE_SIZE, max(1, limit))
    conditions = expense_period_conditions(identity.user_id, year, month)
    with engine.begin() as conn:
        total = conn.execute(select(func.count()).select_from(expenses).where(*conditions)).scalar_one()
        rows = conn.execute(
            select(expenses)
            .where(*conditions)
            .order_by(expenses.c.date.desc(), expenses.c.created_at.desc(), expenses.c.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).mappings().all()
    return ApiResponse(
        data=ExpensePage(
            expenses=[to_expense_response(row) for row in rows],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=math.ceil(total / limit),
            ),
        )
    )


@expenses_router.get("/summary", response_model=ApiResponse[ExpenseSummaryResponse])
def expense_summary(
    year: int | None = Query(None),
    month: int | None = Query(None),
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[ExpenseSummaryResponse]:
    conditions = expense_period_conditions(identity.user_id, year, month)
    summary = summarize_expenses(fetch_expense_entries(engine, conditions))
    return ApiResponse(
        data=ExpenseSummaryResponse(
            total=summary.total,
            category_totals=summary.category_totals,
            count=summary.count,
        )
    )


@expenses_router.get("/summary/yearly", response_model=ApiResponse[YearlySummaryResponse])
def yearly_expense_summary(
    year: int | None = Query(None),
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
    today: date = Depends(get_today),
) -> ApiResponse[YearlySummaryResponse]:
    target_year = year if year is not None else today.year
    conditions = expense_period_conditions(identity.user_id, target_year, None)
    months = monthly_breakdown(fetch_expense_entries(engine, conditions), target_year)
    return ApiResponse(
        data=YearlySummaryResponse(
            year=target_year,
            total=sum((entry.total for entry in months), Decimal("0")),
            months=[
                MonthlyTotalResponse(month=entry.month, total=entry.total, count=entry.count)
                for entry in months
            ],
        )
    )


@expenses_router.put("/{expense_id}", response_model=ApiResponse[ExpenseResponse])
def update_expense(
    expense_id: int,
    payload: ExpensePayload,
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[ExpenseResponse]:
    try:
        payload = ExpensePayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    stmt = (
        update(expenses)
        .where(expenses.c.id == expense_id, expenses.c.user_id == identity.user_id)
        .values(
            amount=payload.amount,
            category=payload.category,
            note=payload.note,
            date=payload.date,
        )
        .returning(
            expenses.c.id,
            expenses.c.amount,
            expenses.c.category,
            expenses.c.note,
            expenses.c.date,
            expenses.c.created_at,
        )
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()
    if not row:
        raise NotFoundError("Expense not found")
    return ApiResponse(data=to_expense_response(row), message="Expense updated successfully")


@expenses_router.delete("/{expense_id}", response_model=ApiResponse[None])
def delete_expense(
    expense_id: int,
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[None]:
    with engine.begin() as conn:
        result = conn.execute(
            delete(expenses).where(expenses.c.id == expense_id, expenses.c.user_id == identity.user_id)
        )
    if result.rowcount == 0:
        raise NotFoundError("Expense not found")
    logger.info("Expense deleted", extra={"user_id": identity.user_id, "expense_id": expense_id})
    return ApiResponse(message="Expense deleted successfully")


@categories_router.get("", response_model=ApiResponse[list[str]])
def list_categories(
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[list[str]]:
    with engine.begin() as conn:
        names = conn.execute(
            select(custom_categories.c.name)
            .where(custom_categories.c.user_id == identity.user_id)
            .order_by(custom_categories.c.name.asc())
        ).scalars().all()
    return ApiResponse(data=list(names))


@categories_router.post(
    "", response_model=ApiResponse[CategoryResponse], status_code=status.HTTP_201_CREATED
)
def create_category(
    payload: CategoryPayload,
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[CategoryResponse]:
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    try:
        with engine.begin() as conn:
            conn.execute(
                insert(custom_categories).values(
                    user_id=identity.user_id, name=payload.category_name
                )
            )
    except IntegrityError as exc:
        raise ConflictError("Category already exists") from exc

    logger.info(
        "Custom category created",
        extra={"user_id": identity.user_id, "category": payload.category_name},
    )
    return ApiResponse(
        data=CategoryResponse(category_name=payload.category_name),
        message="Custom category added successfully",
    )


@categories_router.delete("/{category_name}", response_model=ApiResponse[None])
def delete_category(
    category_name: str,
    identity: SessionIdentity = Depends(require_identity),
    engine: Engine = Depends(get_engine),
) -> ApiResponse[None]:
    category_name = sanitize_string(category_name)
    with engine.begin() as conn:
        result = conn.execute(
            delete(custom_categories).where(
                custom_categories.c.user_id == identity.user_id,
                custom_categories.c.name == category_name,
            )
        )
    if result.rowcount == 0:
        raise NotFoundError("Category not found")
    logger.info(
        "Custom category deleted",
        extra={"user_id": identity.user_id, "category": category_name},
    )
    return ApiResponse(message="Custom category deleted successfully")


@ai_router.post("/insights", response_model=ApiResponse[InsightsResponse])
def generate_insights(
    payload: InsightsPayload,
    request: Request,
    identity: SessionIdentity = Depends(require_identity),
    provider: InsightsProvider = Depends(get_insights_provider),
) -> ApiResponse[InsightsResponse]:
    try:
        payload = InsightsPayload.validate_payload(payload)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc

    report = provider.generate(
        [
            ExpenseRecord(
                amount=expense.amount,
                category=expense.category.strip(),
                note=expense.note.strip(),
                date=expense.date,
            )
            for expense in payload.expenses
        ]
    )
    if report.source == "openai":
        message = "AI insights generated successfully"
    elif request.app.state.settings.openai_api_key:
        message = "Mock insights generated (OpenAI API unavailable)"
    else:
        message = "Mock insights generated (OpenAI API key not configured)"
    return ApiResponse(
        data=InsightsResponse(
            insights=[
                InsightResponse(
                    type=insight.type,
                    title=insight.title,
                    description=insight.description,
                    category=insight.category,
                    severity=insight.severity,
                )
                for insight in report.insights
            ],
            summary=report.summary,
            generated_at=report.generated_at,
            source=report.source,
        ),
        message=message,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    init_db(app.state.engine)
    logger.info(f"Expense tracker API started ({settings.app_env})")
    logger.info(
        "AI insights mode: " + ("OpenAI API" if settings.openai_api_key else "mock generator")
    )
    yield
    app.state.engine.dispose()
    logger.info("Expense tracker API shut down")


def create_app(
    settings: Settings | None = None, today: Callable[[], date] = date.today
) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format)
    secret = resolve_jwt_secret(settings)

    app = FastAPI(title="Expense Tracker API", version="1.0.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = build_engine(settings.database_url)
    app.state.tokens = SessionTokenService(
        secret=secret, expires_in_seconds=settings.session_ttl_seconds
    )
    app.state.cookie_policy = SessionCookiePolicy(
        name=settings.session_cookie_name,
        max_age_seconds=settings.session_ttl_seconds,
        secure=settings.is_production,
    )
    app.state.insights = build_insights_provider(settings)
    app.state.today = today
    app.state.rate_limiters = {}
    if settings.rate_limit_enabled:
        app.state.rate_limiters = {
            AUTH_SCOPE: InMemoryRateLimiter(
                settings.auth_rate_limit, settings.auth_rate_window_seconds
            ),
            API_SCOPE: InMemoryRateLimiter(
                settings.api_rate_limit, settings.api_rate_window_seconds
            ),
        }

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.frontend_origin],
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.middleware("http")(log_requests)
    register_error_handlers(app, settings)

    app.include_router(system_router)
    app.include_router(auth_router)
    app.include_router(expenses_router)
    app.include_router(categories_router)
    app.include_router(salary_router)
    app.include_router(ai_router)
    return app


app = create_app()


def run() -> None:
    uvicorn.run("backend.main:app", host="0.0.0.0", port=4000)
