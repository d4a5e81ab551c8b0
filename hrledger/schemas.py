from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from hrledger.models import (
    AttendanceStatus,
    EmployeeRole,
    HolidayType,
    LeaveStatus,
    LeaveType,
    ReconciliationRunStatus,
    ReconciliationTriggerSource,
)


class EmployeeBrief(BaseModel):
    id: int
    full_name: str
    email: str | None = None
    role: EmployeeRole
    department_id: int | None = None

    model_config = ConfigDict(from_attributes=True)


class AttendanceRecordRead(BaseModel):
    id: int
    employee_id: int
    day_date: date
    check_in: datetime | None
    check_out: datetime | None
    status: AttendanceStatus
    work_hours: float
    note: str | None
    marked_by_id: int | None
    is_manual: bool
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AttendanceSummaryRead(BaseModel):
    present: int
    late: int
    half_day: int
    absent: int
    on_leave: int
    holiday: int
    total_work_hours: float
    working_days: int
    attendance_percentage: float


class AttendanceTodayResponse(BaseModel):
    record: AttendanceRecordRead | None


class AttendanceMonthResponse(BaseModel):
    year: int
    month: int
    records: list[AttendanceRecordRead]
    summary: AttendanceSummaryRead


class EmployeeAttendanceResponse(AttendanceMonthResponse):
    employee: EmployeeBrief


class AttendanceListResponse(BaseModel):
    count: int
    total_pages: int
    current_page: int
    records: list[AttendanceRecordRead]
    role_counts: dict[str, int]


class TeamAttendanceResponse(BaseModel):
    count: int
    total_pages: int
    current_page: int
    records: list[AttendanceRecordRead]
    department: dict[str, Any]
    summary: dict[str, Any]


class ManualAttendanceRequest(BaseModel):
    employee_id: int = Field(ge=1)
    day_date: date
    status: AttendanceStatus
    check_in: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    check_out: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    note: str | None = Field(default=None, max_length=500)


class LeaveApplyRequest(BaseModel):
    leave_type: LeaveType
    from_date: date
    to_date: date
    reason: str = Field(max_length=500)
    is_half_day: bool = False


class LeaveRead(BaseModel):
    id: int
    employee_id: int
    leave_type: LeaveType
    from_date: date
    to_date: date
    total_days: float
    reason: str
    status: LeaveStatus
    is_half_day: bool
    applied_at: datetime
    reviewed_by_id: int | None
    reviewed_at: datetime | None
    rejection_reason: str | None
    attendance_marked: bool

    model_config = ConfigDict(from_attributes=True)


class LeaveListResponse(BaseModel):
    count: int
    total_pages: int
    current_page: int
    leaves: list[LeaveRead]


class LeaveBalanceItem(BaseModel):
    total: float
    used: float
    remaining: float


class LeaveBalanceSnapshot(BaseModel):
    employee_id: int
    year: int
    balances: dict[LeaveType, LeaveBalanceItem]


class MyLeavesResponse(LeaveListResponse):
    balance: LeaveBalanceSnapshot


class LeaveReviewRequest(BaseModel):
    action: Literal["approve", "reject"]
    rejection_reason: str | None = Field(default=None, max_length=300)

    @model_validator(mode="after")
    def _reason_required_for_reject(self) -> "LeaveReviewRequest":
        if self.action == "reject" and not (self.rejection_reason or "").strip():
            raise ValueError("rejection_reason is required when rejecting")
        return self


class LeaveBalanceUpdateRequest(BaseModel):
    leave_type: LeaveType
    total: float
    year: int | None = Field(default=None, ge=1970, le=2200)


class LeaveStatsResponse(BaseModel):
    year: int
    month: int
    total: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    department_wise: list[dict[str, Any]]


class HolidayCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    day_date: date
    holiday_type: HolidayType = HolidayType.NATIONAL
    description: str | None = Field(default=None, max_length=500)
    is_recurring: bool = False


class HolidayRead(BaseModel):
    id: int
    name: str
    day_date: date
    holiday_type: HolidayType
    description: str | None
    is_recurring: bool
    year: int
    is_active: bool

    model_config = ConfigDict(from_attributes=True)


class HolidayListResponse(BaseModel):
    count: int
    total_pages: int
    current_page: int
    holidays: list[HolidayRead]


class HolidayChangeResponse(BaseModel):
    holiday: HolidayRead
    reverted_records: int


class HolidayUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    day_date: date | None = None
    holiday_type: HolidayType | None = None
    description: str | None = Field(default=None, max_length=500)
    is_recurring: bool | None = None
    is_active: bool | None = None


class HolidayBulkItem(BaseModel):
    name: str = Field(default="", max_length=255)
    day_date: date
    holiday_type: HolidayType = HolidayType.NATIONAL
    description: str | None = Field(default=None, max_length=500)


class HolidayBulkCreateRequest(BaseModel):
    holidays: list[HolidayBulkItem]


class HolidayBulkCreateResponse(BaseModel):
    created: int
    skipped: int
    skipped_dates: list[str]
    holidays: list[HolidayRead]


class ReconciliationRunRequest(BaseModel):
    day_date: date | None = None


class ReconciliationRunRead(BaseModel):
    id: int
    run_day: date
    trigger: ReconciliationTriggerSource
    status: ReconciliationRunStatus
    started_at: datetime
    finished_at: datetime | None
    summary: dict[str, Any]
    error: str | None

    model_config = ConfigDict(from_attributes=True)
