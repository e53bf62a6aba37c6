"""Human-readable message catalogs (English and Vietnamese).

Authors and reviewers see these strings; editor-facing surfaces additionally
get the machine-checkable error kind and code from :mod:`folio.errors`.
"""

from __future__ import annotations

from typing import Any

from folio.config import settings

SUPPORTED_LOCALES = ("en", "vi")

STATUS_LABELS: dict[str, dict[str, str]] = {
    "en": {
        "new": "New",
        "desk_reject": "Desk reject",
        "under_review": "Under review",
        "revision": "Revision required",
        "accepted": "Accepted",
        "rejected": "Rejected",
        "in_production": "In production",
        "published": "Published",
    },
    "vi": {
        "new": "Mới gửi",
        "desk_reject": "Từ chối ban đầu",
        "under_review": "Đang phản biện",
        "revision": "Yêu cầu sửa",
        "accepted": "Chấp nhận",
        "rejected": "Từ chối",
        "in_production": "Đang xuất bản",
        "published": "Đã xuất bản",
    },
}

DEADLINE_LABELS: dict[str, dict[str, str]] = {
    "en": {
        "initial_review": "Initial review",
        "revision_submit": "Revision submission",
        "re_review": "Re-review",
        "editor_decision": "Editor decision",
        "production": "Production",
        "publication": "Publication",
    },
    "vi": {
        "initial_review": "Phản biện ban đầu",
        "revision_submit": "Nộp bản sửa",
        "re_review": "Phản biện lại",
        "editor_decision": "Quyết định biên tập",
        "production": "Sản xuất/Dàn trang",
        "publication": "Xuất bản",
    },
}

NOTIFICATION_TITLES: dict[str, dict[str, str]] = {
    "en": {
        "status_changed": "Manuscript {code} is now {status}",
        "reviewer_invited": "Invitation to review {code}",
        "invite_accepted": "Reviewer accepted the invitation for {code}",
        "invite_declined": "Reviewer declined the invitation for {code}",
        "review_submitted": "A review was submitted for {code}",
        "review_reopened": "Your review of {code} was reopened",
        "revision_requested": "Revision requested for {code}",
        "decision_made": "Editorial decision on {code}: {status}",
        "paper_published": "{code} has been published",
        "production_started": "{code} entered production",
        "deadline_assigned": "New deadline for {code}: {deadline}",
        "deadline_approaching": "Deadline approaching for {code}: {deadline}",
        "deadline_overdue": "Deadline overdue for {code}: {deadline}",
    },
    "vi": {
        "status_changed": "Bài {code} chuyển sang trạng thái {status}",
        "reviewer_invited": "Lời mời phản biện bài {code}",
        "invite_accepted": "Phản biện viên đã nhận lời mời cho bài {code}",
        "invite_declined": "Phản biện viên đã từ chối lời mời cho bài {code}",
        "review_submitted": "Đã có phản biện mới cho bài {code}",
        "review_reopened": "Phản biện của bạn cho bài {code} đã được mở lại",
        "revision_requested": "Yêu cầu chỉnh sửa bài {code}",
        "decision_made": "Quyết định biên tập cho bài {code}: {status}",
        "paper_published": "Bài {code} đã được xuất bản",
        "production_started": "Bài {code} đã chuyển sang sản xuất",
        "deadline_assigned": "Hạn mới cho bài {code}: {deadline}",
        "deadline_approaching": "Sắp đến hạn cho bài {code}: {deadline}",
        "deadline_overdue": "Quá hạn cho bài {code}: {deadline}",
    },
}

ERROR_MESSAGES: dict[str, dict[str, str]] = {
    "en": {
        "actor_required": "Sign in to perform this action.",
        "invalid_role": "Unknown role '{role}'.",
        "role_not_permitted": "Your role ({role}) cannot move a manuscript from {from_status} to {to_status}.",
        "action_not_permitted": "Your role ({role}) is not allowed to perform '{action}'.",
        "not_manuscript_author": "Only the manuscript's author can do this.",
        "not_assigned_reviewer": "This review is assigned to another reviewer.",
        "profile_not_owned": "You can only edit your own reviewer profile.",
        "transition_not_allowed": "A manuscript cannot move from {from_status} to {to_status}.",
        "terminal_status": "The manuscript is in a final state ({from_status}) and cannot change.",
        "manuscript_not_found": "Manuscript not found.",
        "review_not_found": "Review assignment not found.",
        "reviewer_profile_not_found": "Reviewer profile not found.",
        "review_already_submitted": "This review has already been submitted.",
        "invite_already_answered": "This invitation has already been answered.",
        "review_declined": "This invitation was declined and can no longer be submitted.",
        "invalid_payload": "Some required fields are missing or malformed.",
        "invalid_status": "Unknown manuscript status '{status}'.",
        "invalid_round": "Review round {round_no} is not the current round ({current_round}).",
        "due_date_in_past": "The due date must be in the future.",
        "invalid_limit": "Limit {limit} is outside 1..{max_limit}.",
        "reviewer_is_author": "Authors cannot review their own manuscript.",
        "reviewer_already_invited": "This reviewer is already assigned in the current round.",
        "manuscript_not_open_for_review": "Reviewers can only be invited while the manuscript is new or under review.",
        "manuscript_not_under_review": "Reviews can only be submitted while the manuscript is under review.",
        "review_not_submitted": "Only submitted reviews can be reopened or rated.",
        "reason_required": "A reason is required.",
        "screening_failed": "The submission did not pass screening.",
        "unknown_category": "Category not found.",
        "category_exists": "A category with this name already exists.",
        "status_changed_concurrently": "The manuscript was changed by someone else. Reload and try again.",
        "stale_version": "The manuscript was changed by someone else. Reload and try again.",
        "reviewer_at_capacity": "The reviewer has reached their maximum number of concurrent reviews.",
    },
    "vi": {
        "actor_required": "Vui lòng đăng nhập để thực hiện thao tác này.",
        "invalid_role": "Vai trò '{role}' không hợp lệ.",
        "role_not_permitted": "Vai trò {role} không được chuyển bài từ {from_status} sang {to_status}.",
        "action_not_permitted": "Vai trò {role} không được phép thực hiện '{action}'.",
        "not_manuscript_author": "Chỉ tác giả của bài mới được thực hiện thao tác này.",
        "not_assigned_reviewer": "Phản biện này được giao cho người khác.",
        "profile_not_owned": "Bạn chỉ được sửa hồ sơ phản biện của chính mình.",
        "transition_not_allowed": "Không thể chuyển bài từ {from_status} sang {to_status}.",
        "terminal_status": "Bài đã ở trạng thái kết thúc ({from_status}) và không thể thay đổi.",
        "manuscript_not_found": "Không tìm thấy bài.",
        "review_not_found": "Không tìm thấy phân công phản biện.",
        "reviewer_profile_not_found": "Không tìm thấy hồ sơ phản biện viên.",
        "review_already_submitted": "Phản biện này đã được nộp.",
        "invite_already_answered": "Lời mời này đã được phản hồi.",
        "review_declined": "Lời mời này đã bị từ chối nên không thể nộp phản biện.",
        "invalid_payload": "Thiếu hoặc sai định dạng một số trường bắt buộc.",
        "invalid_status": "Trạng thái '{status}' không hợp lệ.",
        "invalid_round": "Vòng phản biện {round_no} không phải vòng hiện tại ({current_round}).",
        "due_date_in_past": "Hạn phải ở trong tương lai.",
        "invalid_limit": "Giới hạn {limit} nằm ngoài khoảng 1..{max_limit}.",
        "reviewer_is_author": "Tác giả không được phản biện bài của chính mình.",
        "reviewer_already_invited": "Phản biện viên này đã được phân công trong vòng hiện tại.",
        "manuscript_not_open_for_review": "Chỉ mời phản biện khi bài mới gửi hoặc đang phản biện.",
        "manuscript_not_under_review": "Chỉ nộp phản biện khi bài đang phản biện.",
        "review_not_submitted": "Chỉ có thể mở lại hoặc đánh giá phản biện đã nộp.",
        "reason_required": "Cần nêu lý do.",
        "screening_failed": "Bài gửi chưa đạt yêu cầu sơ loại.",
        "unknown_category": "Không tìm thấy chuyên mục.",
        "category_exists": "Chuyên mục này đã tồn tại.",
        "status_changed_concurrently": "Bài vừa được người khác thay đổi. Vui lòng tải lại và thử lại.",
        "stale_version": "Bài vừa được người khác thay đổi. Vui lòng tải lại và thử lại.",
        "reviewer_at_capacity": "Phản biện viên đã đạt số bài phản biện tối đa.",
    },
}


def _locale(locale: str | None) -> str:
    loc = (locale or settings.locale or "en").lower()
    return loc if loc in SUPPORTED_LOCALES else "en"


def _render(template: str, params: dict[str, Any]) -> str:
    try:
        return template.format(**params)
    except (KeyError, IndexError, ValueError):
        return template


def status_label(status: str, locale: str | None = None) -> str:
    return STATUS_LABELS[_locale(locale)].get(status, status)


def deadline_label(deadline_type: str, locale: str | None = None) -> str:
    return DEADLINE_LABELS[_locale(locale)].get(deadline_type, deadline_type)


def notification_title(event: str, locale: str | None = None, **params: Any) -> str:
    template = NOTIFICATION_TITLES[_locale(locale)].get(event, event)
    return _render(template, params)


def error_message(code: str, locale: str | None = None, **params: Any) -> str:
    """Localized reason for an error code; unknown codes fall back to the code itself."""
    catalog = ERROR_MESSAGES[_locale(locale)]
    template = catalog.get(code) or ERROR_MESSAGES["en"].get(code) or code
    return _render(template, params)
