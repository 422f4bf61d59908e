"""
CBT Portal - Computer-Based Testing API

JSON API for timed multiple-choice / true-false tests taken with one-time
codes. Teachers author question banks, admins issue codes and watch the
dashboard, students validate a code, sit the test and get a score.
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv
from flask import Flask, Response, g, request
from werkzeug.exceptions import HTTPException

import accounts
import activity
import catalog
import code_issuance
import dashboard
import db
import exam_flow
import question_bank
from auth import Role, authenticate, change_password, create_default_admin, get_client_ip, public_user, require_role
from responses import ApiError, ValidationFailed, created, error_response, failure_message, ok
from validators import parse_bool, safe_int

load_dotenv()


def env_flag(name, default=False):
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ('1', 'true', 'yes')


def env_list(name, default=()):
    raw = os.environ.get(name)
    if raw is None:
        return tuple(default)
    return tuple(part.strip() for part in raw.split(',') if part.strip())


app = Flask(__name__)

ALLOW_INSECURE_DEFAULTS = env_flag('ALLOW_INSECURE_DEFAULTS')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key

DATABASE_URL = os.environ.get('DATABASE_URL', '').strip()
if not DATABASE_URL:
    if not ALLOW_INSECURE_DEFAULTS:
        raise RuntimeError("DATABASE_URL is required. Set it to a postgresql:// connection string.")
    DATABASE_URL = 'sqlite:///cbt_portal.db'
db.configure(DATABASE_URL)

RUN_STARTUP_DDL = env_flag('RUN_STARTUP_DDL', True)
RUN_STARTUP_BOOTSTRAP = env_flag('RUN_STARTUP_BOOTSTRAP', True)
ADMIN_USERNAME = os.environ.get('ADMIN_USERNAME', 'admin').strip().lower()
ADMIN_PASSWORD = os.environ.get('ADMIN_PASSWORD', '').strip()
if RUN_STARTUP_BOOTSTRAP:
    if not ADMIN_PASSWORD:
        raise RuntimeError("ADMIN_PASSWORD is required to bootstrap the admin account. Set it in environment variables.")
    if len(ADMIN_PASSWORD) < 12:
        raise RuntimeError("ADMIN_PASSWORD is too short. Use at least 12 characters.")

APP_DEBUG = env_flag('APP_DEBUG')
TOKEN_MAX_AGE = safe_int(os.environ.get('TOKEN_MAX_AGE'), 24 * 60 * 60)
MAPPING_GRACE_MINUTES = safe_int(os.environ.get('MAPPING_GRACE_MINUTES'), 30)
MAX_UPLOAD_MB = safe_int(os.environ.get('MAX_UPLOAD_MB'), 5)
LOG_FILE = os.environ.get('LOG_FILE', '').strip()

app.config['TOKEN_MAX_AGE'] = TOKEN_MAX_AGE
# Headroom over the CSV limit so oversized files get the friendlier message.
app.config['MAX_CONTENT_LENGTH'] = (MAX_UPLOAD_MB + 1) * 1024 * 1024

logging.basicConfig(filename=LOG_FILE or None, level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")


@dataclass(frozen=True)
class CorsPolicy:
    """Explicit CORS allow-list; origins must match exactly."""
    origins: frozenset
    methods: tuple = ('GET', 'POST', 'PUT', 'PATCH', 'DELETE', 'OPTIONS')
    headers: tuple = ('Content-Type', 'Authorization', 'X-Requested-With')
    max_age: int = 86400

    def headers_for(self, origin):
        if not origin or origin not in self.origins:
            return {}
        return {
            'Access-Control-Allow-Origin': origin,
            'Access-Control-Allow-Methods': ', '.join(self.methods),
            'Access-Control-Allow-Headers': ', '.join(self.headers),
            'Access-Control-Allow-Credentials': 'true',
            'Access-Control-Max-Age': str(self.max_age),
            'Vary': 'Origin',
        }


cors_policy = CorsPolicy(
    origins=frozenset(env_list('CORS_ALLOWED_ORIGINS')),
    methods=env_list('CORS_ALLOWED_METHODS', CorsPolicy.methods),
    headers=env_list('CORS_ALLOWED_HEADERS', CorsPolicy.headers),
)

answer_store = exam_flow.AnswerMappingStore(grace_minutes=MAPPING_GRACE_MINUTES)

if RUN_STARTUP_DDL:
    db.init_db()
else:
    logging.warning("RUN_STARTUP_DDL is disabled. Ensure schema is already migrated before startup.")

if RUN_STARTUP_BOOTSTRAP:
    create_default_admin(ADMIN_USERNAME, ADMIN_PASSWORD)


# ==================== REQUEST HOOKS & ERRORS ====================

@app.before_request
def answer_preflight():
    if request.method == 'OPTIONS':
        return Response(status=204)
    return None


@app.after_request
def apply_cors_headers(response):
    for name, value in cors_policy.headers_for(request.headers.get('Origin')).items():
        response.headers[name] = value
    if APP_DEBUG:
        user = g.get('current_user')
        logging.info("%s %s -> %s (user %s)", request.method, request.path, response.status_code,
                     user['id'] if user else '-')
    return response


@app.errorhandler(ApiError)
def handle_api_error(error):
    return error_response(error.message, error.status_code, error.errors, error.data)


HTTP_ERROR_MESSAGES = {
    404: 'Endpoint not found',
    405: 'Method not allowed',
    413: f'Upload too large. Maximum size is {MAX_UPLOAD_MB}MB.',
}


@app.errorhandler(HTTPException)
def handle_http_error(error):
    return error_response(HTTP_ERROR_MESSAGES.get(error.code, error.description), error.code)


@app.errorhandler(Exception)
def handle_unexpected_error(error):
    logging.exception("Unhandled error on %s %s", request.method, request.path)
    message = 'Internal server error'
    if APP_DEBUG:
        message = f'{message}: {error}'
    return error_response(message, 500)


def json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationFailed('Invalid JSON input.')
    return data


def paging(default_limit=50, max_limit=200):
    limit = max(1, min(safe_int(request.args.get('limit'), default_limit), max_limit))
    offset = max(0, safe_int(request.args.get('offset'), 0))
    return limit, offset


def csv_download(content, filename):
    return Response(
        content,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )


def audit_context():
    return activity.AuditContext(get_client_ip(), request.headers.get('User-Agent'))


# ==================== AUTH ====================

@app.route('/auth/login', methods=['POST'])
def login():
    data = json_body()
    identifier = data.get('identifier') or data.get('username') or ''
    token, user = authenticate(identifier, data.get('password') or '', data.get('role'), get_client_ip())
    activity.log_activity(user['id'], activity.LOGIN, f"Logged in as {user['role']}", audit_context())
    return ok({'token': token, 'user': user}, 'Login successful')


@app.route('/auth/me', methods=['GET'])
@require_role(Role.STUDENT, Role.TEACHER, Role.ADMIN)
def me():
    return ok({'user': public_user(g.current_user)}, 'User retrieved')


@app.route('/auth/logout', methods=['POST'])
def logout():
    return ok(message='Logged out successfully')


@app.route('/auth/change-password', methods=['POST'])
@require_role(Role.STUDENT, Role.TEACHER, Role.ADMIN)
def change_own_password():
    data = json_body()
    change_password(g.current_user['id'], data.get('current_password'), data.get('new_password'))
    activity.log_activity(g.current_user['id'], activity.PASSWORD_CHANGED, audit=audit_context())
    return ok(message='Password changed successfully')


# ==================== SYSTEM ====================

@app.route('/system/lookup', methods=['GET'])
def system_lookup():
    return ok(catalog.lookup(request.args.get('type')), 'Lookup data retrieved')


@app.route('/system/health', methods=['GET'])
def system_health():
    try:
        with db.db_connection() as conn:
            db.db_execute(conn.cursor(), 'SELECT 1')
    except Exception:
        logging.exception("Health check failed")
        return error_response('Database unavailable', 503)
    return ok({'status': 'ok'}, 'Healthy')


# ==================== STUDENT ====================

@app.route('/student/validate-test-code', methods=['POST'])
@require_role(Role.STUDENT)
@failure_message('Failed to validate test code')
def student_validate_test_code():
    data = json_body()
    info = exam_flow.validate_test_code(data.get('test_code') or data.get('code'), g.current_user)
    activity.log_activity(
        g.current_user['id'], activity.TEST_CODE_ACCESSED, f"Validated test code {info['code']}", audit_context())
    return ok(info, 'Test code validated successfully')


@app.route('/student/take-test', methods=['GET'])
@require_role(Role.STUDENT)
@failure_message('Failed to load test')
def student_take_test():
    paper = exam_flow.deliver_test(request.args.get('code'), g.current_user, answer_store)
    return ok(paper, 'Test loaded successfully')


@app.route('/student/submit-test', methods=['POST'])
@require_role(Role.STUDENT)
@failure_message('Failed to submit test')
def student_submit_test():
    data = json_body()
    result = exam_flow.submit_test(
        data.get('test_code'), data.get('answers'), data.get('time_taken'), g.current_user, answer_store,
        audit=audit_context())
    return ok(result, 'Test submitted successfully')


@app.route('/student/cancel-test-code', methods=['POST'])
@require_role(Role.STUDENT)
@failure_message('Failed to cancel test code')
def student_cancel_test_code():
    data = json_body()
    released = exam_flow.cancel_test_code(
        data.get('test_code') or data.get('code'), g.current_user, answer_store, audit=audit_context())
    return ok(released, 'Test code released')


@app.route('/student/results', methods=['GET'])
@require_role(Role.STUDENT)
def student_results():
    results = exam_flow.list_student_results(g.current_user['id'], request.args.get('limit'))
    return ok({'results': results}, 'Results retrieved')


@app.route('/student/tests', methods=['GET'])
@require_role(Role.STUDENT)
def student_tests():
    return ok({'tests': exam_flow.list_student_tests(g.current_user['id'])}, 'Tests retrieved')


# ==================== QUESTIONS (teacher & admin) ====================

def questions_collection():
    if request.method == 'POST':
        return created(question_bank.create_question(json_body(), g.current_user), 'Question created successfully')
    filters = question_bank.QuestionFilters.from_args(request.args)
    page = safe_int(request.args.get('page'), 1)
    limit = safe_int(request.args.get('limit'), question_bank.DEFAULT_PAGE_SIZE)
    return ok(question_bank.list_questions(filters, g.current_user, page, limit), 'Questions retrieved')


def question_item(question_id):
    if request.method == 'PUT':
        return ok(question_bank.update_question(question_id, json_body(), g.current_user),
                  'Question updated successfully')
    if request.method == 'DELETE':
        question_bank.delete_question(question_id, g.current_user)
        return ok(message='Question deleted successfully')
    return ok(question_bank.get_question(question_id, g.current_user), 'Question retrieved')


def questions_count():
    filters = question_bank.QuestionFilters.from_args(request.args)
    return ok({'count': question_bank.count_questions(filters, g.current_user)}, 'Question count retrieved')


@failure_message('Failed to create questions')
def questions_bulk():
    data = json_body()
    scope = catalog.parse_scope(data)
    summary = question_bank.bulk_create_questions(data.get('questions'), scope, g.current_user)
    return created(summary, f"{summary['created_count']} question(s) created")


@failure_message('Failed to upload questions')
def questions_csv_upload():
    scope = catalog.parse_scope(request.form)
    file_storage = request.files.get('file') or request.files.get('csv_file')
    summary = question_bank.upload_questions_csv(file_storage, scope, g.current_user)
    activity.log_activity(
        g.current_user['id'], activity.QUESTIONS_UPLOADED,
        f"Uploaded {summary['created_count']} question(s), skipped {summary['skipped_count']}", audit_context())
    return ok(summary, f"Upload complete: {summary['created_count']} created, {summary['skipped_count']} skipped")


def questions_csv_template():
    return csv_download(question_bank.csv_template(), 'questions_template.csv')


def questions_csv_errors(token):
    content = question_bank.get_csv_error_export(token, g.current_user['id'])
    return csv_download(content, 'question_upload_errors.csv')


def register_question_routes(prefix, role, upload_path):
    gate = require_role(role)
    routes = (
        ('/questions', 'questions', questions_collection, ['GET', 'POST']),
        ('/questions/<int:question_id>', 'question', question_item, ['GET', 'PUT', 'DELETE']),
        ('/questions/count', 'questions_count', questions_count, ['GET']),
        ('/questions/bulk', 'questions_bulk', questions_bulk, ['POST']),
        (upload_path, 'questions_upload', questions_csv_upload, ['POST']),
        (f'{upload_path}/template', 'questions_upload_template', questions_csv_template, ['GET']),
        (f'{upload_path}/errors/<token>', 'questions_upload_errors', questions_csv_errors, ['GET']),
    )
    for path, name, view, methods in routes:
        app.add_url_rule(f'/{prefix}{path}', f'{prefix}_{name}', gate(view), methods=methods)


register_question_routes('teacher', Role.TEACHER, '/bulk-upload')
register_question_routes('admin', Role.ADMIN, '/questions/upload')


# ==================== TEACHER ====================

@app.route('/teacher/dashboard-stats', methods=['GET'])
@require_role(Role.TEACHER)
def teacher_dashboard_stats():
    return ok(dashboard.teacher_stats(g.current_user['id']), 'Dashboard statistics retrieved')


@app.route('/teacher/assignments', methods=['GET'])
@require_role(Role.TEACHER)
def teacher_assignments():
    return ok({'assignments': accounts.list_assignments(g.current_user['id'])}, 'Assignments retrieved')


# ==================== ADMIN ====================

@app.route('/admin/dashboard-stats', methods=['GET'])
@require_role(Role.ADMIN)
def admin_dashboard_stats():
    return ok(dashboard.admin_stats(), 'Dashboard statistics retrieved')


@app.route('/admin/test-codes', methods=['GET', 'POST'])
@require_role(Role.ADMIN)
@failure_message('Failed to process test codes')
def admin_test_codes():
    if request.method == 'POST':
        return created(code_issuance.create_test_code(json_body(), g.current_user), 'Test code created successfully')
    limit, offset = paging()
    filters = code_issuance.CodeFilters.from_args(request.args)
    recent = parse_bool(request.args.get('recent'), False)
    return ok(code_issuance.list_test_codes(filters, limit, offset, recent=recent), 'Test codes retrieved')


@app.route('/admin/test-codes/<int:code_id>', methods=['GET', 'PUT', 'PATCH', 'DELETE'])
@require_role(Role.ADMIN)
@failure_message('Failed to process test code')
def admin_test_code(code_id):
    if request.method == 'PUT':
        return ok(code_issuance.update_test_code(code_id, json_body(), g.current_user), 'Test code updated')
    if request.method == 'PATCH':
        data = json_body()
        code = code_issuance.set_test_code_flags(
            code_id,
            g.current_user,
            is_active=parse_bool(data.get('is_active')),
            is_activated=parse_bool(data.get('is_activated')),
        )
        return ok(code, 'Test code status updated')
    if request.method == 'DELETE':
        code_issuance.delete_test_code(code_id, g.current_user)
        return ok(message='Test code deleted successfully')
    return ok(code_issuance.get_test_code(code_id), 'Test code retrieved')


@app.route('/admin/test-code-batches', methods=['GET', 'POST'])
@require_role(Role.ADMIN)
@failure_message('Failed to process test code batches')
def admin_test_code_batches():
    if request.method == 'POST':
        batch = code_issuance.create_batch(json_body(), g.current_user)
        activity.log_activity(
            g.current_user['id'], activity.TEST_CODES_GENERATED,
            f"Generated {batch['code_count']} code(s) in batch {batch['batch_id']}", audit_context())
        return created(batch, f"Batch created with {batch['code_count']} test code(s)")
    limit, offset = paging()
    filters = code_issuance.BatchFilters.from_args(request.args)
    return ok(code_issuance.list_batches(filters, limit, offset), 'Batches retrieved')


@app.route('/admin/test-code-batches/<int:batch_id>', methods=['GET', 'DELETE'])
@require_role(Role.ADMIN)
@failure_message('Failed to process test code batch')
def admin_test_code_batch(batch_id):
    if request.method == 'DELETE':
        code_issuance.delete_batch(batch_id, g.current_user)
        return ok(message='Batch deleted successfully')
    return ok(code_issuance.get_batch(batch_id), 'Batch retrieved')


@app.route('/admin/test-code-batches/<int:batch_id>/codes', methods=['GET'])
@require_role(Role.ADMIN)
def admin_test_code_batch_codes(batch_id):
    return ok({'codes': code_issuance.list_batch_codes(batch_id)}, 'Batch codes retrieved')


@app.route('/admin/test-code-batches/<int:batch_id>/activate', methods=['PATCH', 'POST'])
@require_role(Role.ADMIN)
@failure_message('Failed to update batch activation')
def admin_test_code_batch_activate(batch_id):
    is_active = parse_bool(json_body().get('is_active'))
    if is_active is None:
        raise ValidationFailed('is_active must be a boolean.', errors={'is_active': 'Required.'})
    result = code_issuance.set_batch_activation(batch_id, is_active, g.current_user)
    activity.log_activity(
        g.current_user['id'], activity.BATCH_ACTIVATED if is_active else activity.BATCH_DEACTIVATED,
        f"Batch {batch_id}: {result['codes_updated']} code(s) updated", audit_context())
    return ok(result, f"Batch {'activated' if is_active else 'deactivated'}")


@app.route('/admin/teachers', methods=['GET', 'POST'])
@require_role(Role.ADMIN)
@failure_message('Failed to process teachers')
def admin_teachers():
    if request.method == 'POST':
        return created(accounts.create_teacher(json_body()), 'Teacher created successfully')
    return ok({'teachers': accounts.list_teachers()}, 'Teachers retrieved')


@app.route('/admin/teachers/<int:teacher_id>', methods=['GET', 'PUT', 'DELETE'])
@require_role(Role.ADMIN)
@failure_message('Failed to process teacher')
def admin_teacher(teacher_id):
    if request.method == 'PUT':
        return ok(accounts.update_teacher(teacher_id, json_body()), 'Teacher updated successfully')
    if request.method == 'DELETE':
        accounts.delete_teacher(teacher_id)
        return ok(message='Teacher deleted successfully')
    return ok(accounts.get_user(teacher_id, Role.TEACHER), 'Teacher retrieved')


@app.route('/admin/students', methods=['GET', 'POST'])
@require_role(Role.ADMIN)
@failure_message('Failed to process students')
def admin_students():
    if request.method == 'POST':
        return created(accounts.create_student(json_body()), 'Student created successfully')
    limit, offset = paging(100, 500)
    students = accounts.list_students(request.args.get('search'), request.args.get('class_level'), limit, offset)
    return ok(students, 'Students retrieved')


@app.route('/admin/students/<int:student_id>', methods=['GET', 'PUT', 'DELETE'])
@require_role(Role.ADMIN)
@failure_message('Failed to process student')
def admin_student(student_id):
    if request.method == 'PUT':
        return ok(accounts.update_student(student_id, json_body()), 'Student updated successfully')
    if request.method == 'DELETE':
        accounts.delete_student(student_id)
        return ok(message='Student deleted successfully')
    return ok(accounts.get_user(student_id, Role.STUDENT), 'Student retrieved')


@app.route('/admin/assignments', methods=['GET', 'POST'])
@require_role(Role.ADMIN)
@failure_message('Failed to process assignments')
def admin_assignments():
    if request.method == 'POST':
        return created(accounts.create_assignment(json_body(), g.current_user), 'Teacher assigned successfully')
    teacher_id = safe_int(request.args.get('teacher_id'))
    return ok({'assignments': accounts.list_assignments(teacher_id)}, 'Assignments retrieved')


@app.route('/admin/assignments/<int:assignment_id>', methods=['DELETE'])
@require_role(Role.ADMIN)
@failure_message('Failed to remove assignment')
def admin_assignment(assignment_id):
    accounts.delete_assignment(assignment_id, g.current_user)
    return ok(message='Assignment removed successfully')


@app.route('/admin/results', methods=['GET'])
@require_role(Role.ADMIN)
def admin_results():
    limit, offset = paging(100, 500)
    filters = {
        'subject_id': safe_int(request.args.get('subject_id')),
        'class_level': (request.args.get('class_level') or '').strip().upper() or None,
        'term_id': safe_int(request.args.get('term_id')),
        'session_id': safe_int(request.args.get('session_id')),
        'student_id': safe_int(request.args.get('student_id')),
    }
    return ok(exam_flow.list_results(filters, limit, offset), 'Results retrieved')


@app.route('/admin/activity-logs', methods=['GET'])
@require_role(Role.ADMIN)
def admin_activity_logs():
    limit, offset = paging()
    filters = activity.ActivityFilters.from_args(request.args)
    return ok(activity.list_activity(filters, limit, offset), 'Activity logs retrieved')


@app.route('/admin/subjects', methods=['POST'])
@require_role(Role.ADMIN)
def admin_create_subject():
    data = json_body()
    return created(catalog.create_subject(data.get('name'), data.get('code'), data.get('description')),
                   'Subject created successfully')


@app.route('/admin/sessions', methods=['POST'])
@require_role(Role.ADMIN)
def admin_create_session():
    data = json_body()
    session = catalog.create_session(data.get('name'), parse_bool(data.get('is_current'), False))
    return created(session, 'Session created successfully')


if __name__ == '__main__':
    app.run(debug=APP_DEBUG, port=safe_int(os.environ.get('PORT'), 5000))
