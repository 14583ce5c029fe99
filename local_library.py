"""
Local Library - single-file Flask catalog application.

Features:
- Authors, Books, Genres and Book copies (instances): list, detail, create, update, delete
- Server-rendered HTML pages (templates embedded as strings)
- Server-side validation with Flask-WTF / WTForms, CSRF protection on every form
- Delete is refused while other records still reference the target
- Catalog home page with record counts

Run:
    pip install -e .
    flask --app local_library init-db
    flask --app local_library seed
    flask --app local_library run

Open http://127.0.0.1:5000/catalog/
"""
import os
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import date

import bleach
from dateutil.parser import parse as dateparse
from flask import (
    Flask, abort, current_app, flash, redirect, render_template_string, request, url_for
)
from flask_sqlalchemy import SQLAlchemy
from flask_talisman import Talisman
from flask_wtf import CSRFProtect, FlaskForm
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import joinedload, selectinload, validates
from wtforms import DateField, SelectField, SelectMultipleField, StringField, SubmitField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional as OptionalValidator, Regexp, ValidationError
from wtforms.widgets import CheckboxInput, ListWidget

# --- Config ---
BASE_DIR = os.path.abspath(os.path.dirname(__file__))

SECRET_KEY = os.environ.get('LIBRARY_SECRET') or "dev-secret-change-me"
DATABASE_URL = os.environ.get('LIBRARY_DATABASE_URL') or f"sqlite:///{os.path.join(BASE_DIR, 'library.db')}"
QUERY_WORKERS = int(os.environ.get('LIBRARY_QUERY_WORKERS', '5'))
FORCE_HTTPS = os.environ.get('LIBRARY_FORCE_HTTPS', 'false').lower() in ('true', '1', 'yes')
LOG_LEVEL = os.environ.get('LIBRARY_LOG_LEVEL', 'INFO').upper()

app = Flask(__name__)
app.config['SECRET_KEY'] = SECRET_KEY
app.config['SQLALCHEMY_DATABASE_URI'] = DATABASE_URL
app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.logger.setLevel(LOG_LEVEL)

# Security headers; inline styles are used by the embedded templates
Talisman(
    app,
    force_https=FORCE_HTTPS,
    session_cookie_secure=FORCE_HTTPS,
    content_security_policy={
        'default-src': ["'self'"],
        'style-src': ["'self'", "'unsafe-inline'"],
    },
)

db = SQLAlchemy(app)
csrf = CSRFProtect(app)

# Independent queries inside one request run side by side on this pool
executor = ThreadPoolExecutor(max_workers=QUERY_WORKERS, thread_name_prefix='library-query')

STATUSES = ('Available', 'Maintenance', 'Loaned', 'Reserved')
DEFAULT_STATUS = 'Maintenance'

ALLOWED_SUMMARY_TAGS = ['b', 'i', 'u', 'em', 'strong', 'p', 'br', 'ul', 'ol', 'li']


def format_date(value):
    """Format a date like ``Jan 6, 1920``; empty string for a missing date."""
    if value is None:
        return ""
    return f"{value:%b} {value.day}, {value.year}"


# --- Models ---
book_genre = db.Table(
    'book_genre',
    db.Column('book_id', db.Integer, db.ForeignKey('books.id'), primary_key=True),
    db.Column('genre_id', db.Integer, db.ForeignKey('genres.id'), primary_key=True),
)


class Author(db.Model):
    __tablename__ = 'authors'
    id = db.Column(db.Integer, primary_key=True)
    first_name = db.Column(db.String(100), nullable=False)
    family_name = db.Column(db.String(100), nullable=False, index=True)
    date_of_birth = db.Column(db.Date)
    date_of_death = db.Column(db.Date)

    books = db.relationship('Book', back_populates='author')

    @property
    def name(self):
        # Both parts are needed for a meaningful display name
        if not self.first_name or not self.family_name:
            return ""
        return f"{self.family_name}, {self.first_name}"

    @property
    def lifespan(self):
        if self.date_of_birth is None and self.date_of_death is None:
            return ""
        return f"{format_date(self.date_of_birth)} - {format_date(self.date_of_death)}".strip()

    @property
    def url(self):
        return f"/catalog/author/{self.id}"


class Genre(db.Model):
    __tablename__ = 'genres'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True, index=True)

    books = db.relationship('Book', secondary=book_genre, back_populates='genres')

    @property
    def url(self):
        return f"/catalog/genre/{self.id}"


class Book(db.Model):
    __tablename__ = 'books'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(250), nullable=False, index=True)
    summary = db.Column(db.Text, nullable=False)
    isbn = db.Column(db.String(32), nullable=False)
    author_id = db.Column(db.Integer, db.ForeignKey('authors.id'), nullable=False, index=True)

    author = db.relationship('Author', back_populates='books')
    genres = db.relationship('Genre', secondary=book_genre, back_populates='books', order_by='Genre.name')
    instances = db.relationship('BookInstance', back_populates='book')

    @property
    def url(self):
        return f"/catalog/book/{self.id}"


class BookInstance(db.Model):
    __tablename__ = 'book_instances'
    id = db.Column(db.Integer, primary_key=True)
    book_id = db.Column(db.Integer, db.ForeignKey('books.id'), nullable=False, index=True)
    imprint = db.Column(db.String(250), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=DEFAULT_STATUS, index=True)
    due_back = db.Column(db.Date, default=date.today)

    book = db.relationship('Book', back_populates='instances')

    @validates('status')
    def validate_status(self, key, value):
        if value not in STATUSES:
            raise ValueError(f"status must be one of {', '.join(STATUSES)}")
        return value

    @property
    def due_back_formatted(self):
        return format_date(self.due_back)

    @property
    def url(self):
        return f"/catalog/bookinstance/{self.id}"


# --- Forms ---
def strip_text(value):
    return value.strip() if isinstance(value, str) else value


def sanitize_html(value):
    if not value:
        return value
    return bleach.clean(value, tags=ALLOWED_SUMMARY_TAGS, strip=True)


def as_list(value):
    """Normalize a form value that may hold one item or many into a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


class MultiCheckboxField(SelectMultipleField):
    widget = ListWidget(prefix_label=False)
    option_widget = CheckboxInput()

    def process_data(self, value):
        super().process_data(as_list(value))


class AuthorForm(FlaskForm):
    first_name = StringField('First Name', filters=[strip_text], validators=[
        DataRequired(message='First name must be specified.'),
        Length(max=100),
        Regexp(r'^[A-Za-z0-9]+$', message='First name has non-alphanumeric characters.'),
    ])
    family_name = StringField('Family Name', filters=[strip_text], validators=[
        DataRequired(message='Family name must be specified.'),
        Length(max=100),
        Regexp(r'^[A-Za-z0-9]+$', message='Family name has non-alphanumeric characters.'),
    ])
    date_of_birth = DateField('Date of birth', validators=[OptionalValidator()])
    date_of_death = DateField('Date of death', validators=[OptionalValidator()])
    submit = SubmitField('Submit')

    def validate_date_of_death(form, field):
        if field.data and form.date_of_birth.data and field.data < form.date_of_birth.data:
            raise ValidationError('Date of death must not be before date of birth.')


class GenreForm(FlaskForm):
    name = StringField('Genre', filters=[strip_text], validators=[
        DataRequired(message='Genre name required'),
        Length(min=3, max=100),
    ])
    submit = SubmitField('Submit')


class BookForm(FlaskForm):
    title = StringField('Title', filters=[strip_text], validators=[
        DataRequired(message='Title must not be empty.'), Length(max=250)
    ])
    author = SelectField('Author', coerce=int, validators=[DataRequired(message='Author must not be empty.')])
    summary = TextAreaField('Summary', filters=[strip_text, sanitize_html], validators=[
        DataRequired(message='Summary must not be empty.')
    ])
    isbn = StringField('ISBN', filters=[strip_text], validators=[
        DataRequired(message='ISBN must not be empty.'), Length(max=32)
    ])
    genre = MultiCheckboxField('Genre', coerce=int)
    submit = SubmitField('Submit')


class BookInstanceForm(FlaskForm):
    book = SelectField('Book', coerce=int, validators=[DataRequired(message='Book must be specified.')])
    imprint = StringField('Imprint', filters=[strip_text], validators=[
        DataRequired(message='Imprint must be specified.'), Length(max=250)
    ])
    due_back = DateField('Date when book available', validators=[OptionalValidator()])
    status = SelectField('Status', choices=[(s, s) for s in STATUSES], default=DEFAULT_STATUS)
    submit = SubmitField('Submit')


def set_book_choices(form, authors, genres):
    form.author.choices = [(a.id, a.name) for a in authors]
    form.genre.choices = [(g.id, g.name) for g in genres]


# --- Data access helpers ---
def _in_app_context(call):
    # Worker threads get their own app context and therefore their own session
    flask_app = current_app._get_current_object()

    def run():
        with flask_app.app_context():
            return call()
    return run


def run_parallel(*calls):
    """Run independent queries side by side and return their results in call order.

    The join is abandoned as soon as one query fails, and that failure is raised.
    Every query must eagerly load what the caller will touch: results come back
    detached from the worker's session.
    """
    futures = [executor.submit(_in_app_context(call)) for call in calls]
    wait(futures, return_when=FIRST_EXCEPTION)
    for future in futures:
        if future.done() and future.exception() is not None:
            raise future.exception()
    return tuple(future.result() for future in futures)


def run_settled(**calls):
    """Run named queries side by side, keeping whatever succeeded.

    Returns ``(results, error)`` where ``error`` is the first database error seen
    (or None) and ``results`` holds an entry for every query that succeeded.
    """
    futures = {name: executor.submit(_in_app_context(call)) for name, call in calls.items()}
    results, error = {}, None
    for name, future in futures.items():
        try:
            results[name] = future.result()
        except SQLAlchemyError as exc:
            current_app.logger.error("Query %s failed: %s", name, exc)
            if error is None:
                error = exc
    return results, error


def count_rows(model, *criteria):
    return db.session.scalar(db.select(db.func.count()).select_from(model).where(*criteria))


def find_genre(name):
    return Genre.query.filter_by(name=name).first()


def load_genres(genre_ids):
    genre_ids = as_list(genre_ids)
    if not genre_ids:
        return []
    return Genre.query.filter(Genre.id.in_(genre_ids)).order_by(Genre.name).all()


def ordered_authors():
    return Author.query.order_by(Author.family_name, Author.first_name).all()


def ordered_genres():
    return Genre.query.order_by(Genre.name).all()


def ordered_books():
    return Book.query.order_by(Book.title).all()


# --- Templates (embedded) ---
NAV_HTML = """
<nav style="background:#f2f2f2;padding:10px;margin-bottom:20px;">
    <a href="{{ url_for('index') }}">Home</a> |
    <a href="{{ url_for('book_list') }}">All books</a> |
    <a href="{{ url_for('author_list') }}">All authors</a> |
    <a href="{{ url_for('genre_list') }}">All genres</a> |
    <a href="{{ url_for('bookinstance_list') }}">All book-instances</a>
    <br>
    <a href="{{ url_for('author_create') }}">Create new author</a> |
    <a href="{{ url_for('genre_create') }}">Create new genre</a> |
    <a href="{{ url_for('book_create') }}">Create new book</a> |
    <a href="{{ url_for('bookinstance_create') }}">Create new book instance (copy)</a>
</nav>
{% for category, message in get_flashed_messages(with_categories=true) %}
  <p class="flash {{ category }}">{{ message }}</p>
{% endfor %}
"""

FORM_ERRORS_HTML = """
{% if form.errors %}
<ul class="errors" style="color:red;">
  {% for messages in form.errors.values() %}{% for message in messages %}
    <li>{{ message }}</li>
  {% endfor %}{% endfor %}
</ul>
{% endif %}
"""

ERROR_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<p>{{ message }}</p>
<p>Status: {{ status }}</p>
"""

INDEX_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<p>Welcome to <em>LocalLibrary</em>, a very basic catalog website.</p>
<h2>Dynamic content</h2>
{% if error %}
  <p class="error" style="color:red;">Error getting dynamic content: {{ error }}</p>
{% endif %}
<p>The library has the following record counts:</p>
<ul>
  <li><strong>Books:</strong> {{ data.get('book_count', 'unavailable') }}</li>
  <li><strong>Copies:</strong> {{ data.get('book_instance_count', 'unavailable') }}</li>
  <li><strong>Copies available:</strong> {{ data.get('book_instance_available_count', 'unavailable') }}</li>
  <li><strong>Authors:</strong> {{ data.get('author_count', 'unavailable') }}</li>
  <li><strong>Genres:</strong> {{ data.get('genre_count', 'unavailable') }}</li>
</ul>
"""

# Author templates
AUTHOR_LIST_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<ul>
{% for author in author_list %}
  <li><a href="{{ author.url }}">{{ author.name }}</a> ({{ author.lifespan }})</li>
{% else %}
  <li>There are no authors.</li>
{% endfor %}
</ul>
"""

AUTHOR_DETAIL_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>Author: {{ author.name }}</h1>
<p>{{ author.lifespan }}</p>
<h4>Books</h4>
<dl>
{% for book in author_books %}
  <dt><a href="{{ book.url }}">{{ book.title }}</a></dt>
  <dd>{{ book.summary|safe }}</dd>
{% else %}
  <p>This author has no books.</p>
{% endfor %}
</dl>
<p>
  <a href="{{ url_for('author_update', author_id=author.id) }}">Update author</a> |
  <a href="{{ url_for('author_delete', author_id=author.id) }}">Delete author</a>
</p>
"""

AUTHOR_FORM_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<form method="post">
  {{ form.hidden_tag() }}
  <p>{{ form.first_name.label }}<br>{{ form.first_name(size=40, placeholder='First name (Christian)') }}</p>
  <p>{{ form.family_name.label }}<br>{{ form.family_name(size=40, placeholder='Family name (Surname)') }}</p>
  <p>{{ form.date_of_birth.label }}<br>{{ form.date_of_birth() }}</p>
  <p>{{ form.date_of_death.label }}<br>{{ form.date_of_death() }}</p>
  <p>{{ form.submit() }}</p>
</form>
""" + FORM_ERRORS_HTML

AUTHOR_DELETE_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}: {{ author.name }}</h1>
<p>{{ author.lifespan }}</p>
{% if author_books %}
  <p><strong>Delete the following books before attempting to delete this author.</strong></p>
  <dl>
  {% for book in author_books %}
    <dt><a href="{{ book.url }}">{{ book.title }}</a></dt>
    <dd>{{ book.summary|safe }}</dd>
  {% endfor %}
  </dl>
{% else %}
  <p>Do you really want to delete this Author?</p>
  <form method="post">
    <input type="hidden" name="csrf_token" value="{{ csrf_token() }}">
    <button type="submit">Delete</button>
  </form>
{% endif %}
"""

# Genre templates
GENRE_LIST_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<ul>
{% for genre in genre_list %}
  <li><a href="{{ genre.url }}">{{ genre.name }}</a></li>
{% else %}
  <li>There are no genres.</li>
{% endfor %}
</ul>
"""

GENRE_DETAIL_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>Genre: {{ genre.name }}</h1>
<h4>Books</h4>
<dl>
{% for book in genre_books %}
  <dt><a href="{{ book.url }}">{{ book.title }}</a></dt>
  <dd>{{ book.summary|safe }}</dd>
{% else %}
  <p>This genre has no books.</p>
{% endfor %}
</dl>
<p>
  <a href="{{ url_for('genre_update', genre_id=genre.id) }}">Update genre</a> |
  <a href="{{ url_for('genre_delete', genre_id=genre.id) }}">Delete genre</a>
</p>
"""

GENRE_FORM_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<form method="post">
  {{ form.hidden_tag() }}
  <p>{{ form.name.label }}<br>{{ form.name(size=40, placeholder='Fantasy, Poetry etc.') }}</p>
  <p>{{ form.submit() }}</p>
</form>
""" + FORM_ERRORS_HTML

GENRE_DELETE_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}: {{ genre.name }}</h1>
{% if genre_books %}
  <p><strong>Delete the following books before attempting to delete this genre.</strong></p>
  <dl>
  {% for book in genre_books %}
    <dt><a href="{{ book.url }}">{{ book.title }}</a></dt>
    <dd>{{ book.summary|safe }}</dd>
  {% endfor %}
  </dl>
{% else %}
  <p>Do you really want to delete this Genre?</p>
  <form method="post">
    <input type="hidden" name="csrf_token" value="{{ csrf_token() }}">
    <button type="submit">Delete</button>
  </form>
{% endif %}
"""

# Book templates
BOOK_LIST_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<ul>
{% for book in book_list %}
  <li><a href="{{ book.url }}">{{ book.title }}</a> ({{ book.author.name }})</li>
{% else %}
  <li>There are no books.</li>
{% endfor %}
</ul>
"""

BOOK_DETAIL_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>Title: {{ book.title }}</h1>
<p><strong>Author:</strong> <a href="{{ book.author.url }}">{{ book.author.name }}</a></p>
<p><strong>Summary:</strong> {{ book.summary|safe }}</p>
<p><strong>ISBN:</strong> {{ book.isbn }}</p>
<p><strong>Genre:</strong>
{% for genre in book.genres %}<a href="{{ genre.url }}">{{ genre.name }}</a>{% if not loop.last %}, {% endif %}{% endfor %}
</p>
<h4>Copies</h4>
{% for copy in book_instances %}
  <hr>
  <p class="status-{{ copy.status|lower }}">{{ copy.status }}</p>
  <p><strong>Imprint:</strong> {{ copy.imprint }}</p>
  {% if copy.status != 'Available' %}<p><strong>Due back:</strong> {{ copy.due_back_formatted }}</p>{% endif %}
  <p><strong>Id:</strong> <a href="{{ copy.url }}">{{ copy.id }}</a></p>
{% else %}
  <p>There are no copies of this book in the library.</p>
{% endfor %}
<p>
  <a href="{{ url_for('book_update', book_id=book.id) }}">Update book</a> |
  <a href="{{ url_for('book_delete', book_id=book.id) }}">Delete book</a>
</p>
"""

BOOK_FORM_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<form method="post">
  {{ form.hidden_tag() }}
  <p>{{ form.title.label }}<br>{{ form.title(size=60, placeholder='Name of book') }}</p>
  <p>{{ form.author.label }}<br>{{ form.author() }}</p>
  <p>{{ form.summary.label }}<br>{{ form.summary(rows=6, cols=80) }}</p>
  <p>{{ form.isbn.label }}<br>{{ form.isbn(size=20, placeholder='ISBN13') }}</p>
  <div>{{ form.genre.label }}{{ form.genre() }}</div>
  <p>{{ form.submit() }}</p>
</form>
""" + FORM_ERRORS_HTML

BOOK_DELETE_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}: {{ book.title }}</h1>
<p><strong>Author:</strong> {{ book.author.name }}</p>
{% if book_instances %}
  <p><strong>Delete the following copies before attempting to delete this book.</strong></p>
  <ul>
  {% for copy in book_instances %}
    <li><a href="{{ copy.url }}">{{ copy.imprint }}</a> ({{ copy.status }})</li>
  {% endfor %}
  </ul>
{% else %}
  <p>Do you really want to delete this Book?</p>
  <form method="post">
    <input type="hidden" name="csrf_token" value="{{ csrf_token() }}">
    <button type="submit">Delete</button>
  </form>
{% endif %}
"""

# Book instance templates
BOOKINSTANCE_LIST_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<ul>
{% for copy in bookinstance_list %}
  <li>
    <a href="{{ copy.url }}">{{ copy.book.title }} : {{ copy.imprint }}</a> -
    <span class="status-{{ copy.status|lower }}">{{ copy.status }}</span>
    {% if copy.status != 'Available' %}<span> (Due: {{ copy.due_back_formatted }})</span>{% endif %}
  </li>
{% else %}
  <li>There are no book copies in this library.</li>
{% endfor %}
</ul>
"""

BOOKINSTANCE_DETAIL_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>ID: {{ bookinstance.id }}</h1>
<p><strong>Title:</strong> <a href="{{ bookinstance.book.url }}">{{ bookinstance.book.title }}</a></p>
<p><strong>Imprint:</strong> {{ bookinstance.imprint }}</p>
<p><strong>Status:</strong> <span class="status-{{ bookinstance.status|lower }}">{{ bookinstance.status }}</span></p>
{% if bookinstance.status != 'Available' %}<p><strong>Due back:</strong> {{ bookinstance.due_back_formatted }}</p>{% endif %}
<p>
  <a href="{{ url_for('bookinstance_update', bookinstance_id=bookinstance.id) }}">Update copy</a> |
  <a href="{{ url_for('bookinstance_delete', bookinstance_id=bookinstance.id) }}">Delete copy</a>
</p>
"""

BOOKINSTANCE_FORM_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}</h1>
<form method="post">
  {{ form.hidden_tag() }}
  <p>{{ form.book.label }}<br>{{ form.book() }}</p>
  <p>{{ form.imprint.label }}<br>{{ form.imprint(size=60, placeholder='Publisher and date information') }}</p>
  <p>{{ form.due_back.label }}<br>{{ form.due_back() }}</p>
  <p>{{ form.status.label }}<br>{{ form.status() }}</p>
  <p>{{ form.submit() }}</p>
</form>
""" + FORM_ERRORS_HTML

BOOKINSTANCE_DELETE_TEMPLATE = """
<!doctype html>
<title>{{ title }}</title>
{{ nav|safe }}
<h1>{{ title }}: {{ bookinstance.id }}</h1>
<p><strong>Title:</strong> {{ bookinstance.book.title }}</p>
<p><strong>Imprint:</strong> {{ bookinstance.imprint }}</p>
<p><strong>Status:</strong> {{ bookinstance.status }}</p>
<p>Do you really want to delete this copy?</p>
<form method="post">
  <input type="hidden" name="csrf_token" value="{{ csrf_token() }}">
  <button type="submit">Delete</button>
</form>
"""


def render_page(template, **context):
    nav = render_template_string(NAV_HTML)
    return render_template_string(template, nav=nav, **context)


# --- Views: home ---
@app.route('/')
def home():
    return redirect(url_for('index'))


@app.route('/catalog/')
def index():
    data, error = run_settled(
        book_count=lambda: count_rows(Book),
        book_instance_count=lambda: count_rows(BookInstance),
        book_instance_available_count=lambda: count_rows(BookInstance, BookInstance.status == 'Available'),
        author_count=lambda: count_rows(Author),
        genre_count=lambda: count_rows(Genre),
    )
    return render_page(INDEX_TEMPLATE, title='Local Library Home', error=error, data=data)


# --- Views: authors ---
@app.route('/catalog/authors')
def author_list():
    authors = ordered_authors()
    return render_page(AUTHOR_LIST_TEMPLATE, title='Author List', author_list=authors)


@app.route('/catalog/author/<int:author_id>')
def author_detail(author_id):
    author, author_books = run_parallel(
        lambda: db.session.get(Author, author_id),
        lambda: Book.query.filter_by(author_id=author_id).order_by(Book.title).all(),
    )
    if author is None:
        abort(404, description='Author not found')
    return render_page(AUTHOR_DETAIL_TEMPLATE, title='Author Detail', author=author, author_books=author_books)


@app.route('/catalog/author/create', methods=['GET', 'POST'])
def author_create():
    form = AuthorForm()
    if form.validate_on_submit():
        author = Author(
            first_name=form.first_name.data,
            family_name=form.family_name.data,
            date_of_birth=form.date_of_birth.data,
            date_of_death=form.date_of_death.data,
        )
        db.session.add(author)
        db.session.commit()
        app.logger.info("Created author %s", author.id)
        flash("Author created", "success")
        return redirect(author.url)
    return render_page(AUTHOR_FORM_TEMPLATE, title='Create Author', form=form)


@app.route('/catalog/author/<int:author_id>/update', methods=['GET', 'POST'])
def author_update(author_id):
    author = db.session.get(Author, author_id)
    if author is None:
        abort(404, description='Author not found')
    form = AuthorForm(obj=author)
    if form.validate_on_submit():
        author = db.session.merge(Author(
            id=author_id,
            first_name=form.first_name.data,
            family_name=form.family_name.data,
            date_of_birth=form.date_of_birth.data,
            date_of_death=form.date_of_death.data,
        ))
        db.session.commit()
        app.logger.info("Updated author %s", author_id)
        flash("Author updated", "success")
        return redirect(author.url)
    return render_page(AUTHOR_FORM_TEMPLATE, title='Update Author', form=form)


@app.route('/catalog/author/<int:author_id>/delete', methods=['GET', 'POST'])
def author_delete(author_id):
    author, author_books = run_parallel(
        lambda: db.session.get(Author, author_id),
        lambda: Book.query.filter_by(author_id=author_id).order_by(Book.title).all(),
    )
    if author is None:
        return redirect(url_for('author_list'))
    if request.method == 'POST':
        if author_books:
            app.logger.warning("Refused to delete author %s: %d books remain", author_id, len(author_books))
        else:
            db.session.delete(db.session.get(Author, author_id))
            db.session.commit()
            app.logger.info("Deleted author %s", author_id)
            flash("Author deleted", "success")
            return redirect(url_for('author_list'))
    return render_page(AUTHOR_DELETE_TEMPLATE, title='Delete Author', author=author, author_books=author_books)


# --- Views: genres ---
@app.route('/catalog/genres')
def genre_list():
    return render_page(GENRE_LIST_TEMPLATE, title='Genre List', genre_list=ordered_genres())


@app.route('/catalog/genre/<int:genre_id>')
def genre_detail(genre_id):
    genre, genre_books = run_parallel(
        lambda: db.session.get(Genre, genre_id),
        lambda: Book.query.filter(Book.genres.any(Genre.id == genre_id)).order_by(Book.title).all(),
    )
    if genre is None:
        abort(404, description='Genre not found')
    return render_page(GENRE_DETAIL_TEMPLATE, title='Genre Detail', genre=genre, genre_books=genre_books)


def commit_genre(name):
    """Commit the pending genre write; on a name clash return the genre that owns the name."""
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = find_genre(name)
        if existing is None:
            raise
        app.logger.warning("Genre %r was created concurrently; using genre %s", name, existing.id)
        return existing
    return None


@app.route('/catalog/genre/create', methods=['GET', 'POST'])
def genre_create():
    form = GenreForm()
    if form.validate_on_submit():
        name = form.name.data
        existing = find_genre(name)
        if existing is not None:
            app.logger.info("Genre %r already exists as %s", name, existing.id)
            return redirect(existing.url)
        genre = Genre(name=name)
        db.session.add(genre)
        existing = commit_genre(name)
        if existing is not None:
            return redirect(existing.url)
        app.logger.info("Created genre %s", genre.id)
        flash("Genre created", "success")
        return redirect(genre.url)
    return render_page(GENRE_FORM_TEMPLATE, title='Create Genre', form=form)


@app.route('/catalog/genre/<int:genre_id>/update', methods=['GET', 'POST'])
def genre_update(genre_id):
    genre = db.session.get(Genre, genre_id)
    if genre is None:
        abort(404, description='Genre not found')
    form = GenreForm(obj=genre)
    if form.validate_on_submit():
        name = form.name.data
        existing = find_genre(name)
        if existing is not None:
            return redirect(existing.url)
        genre = db.session.merge(Genre(id=genre_id, name=name))
        existing = commit_genre(name)
        if existing is not None:
            return redirect(existing.url)
        app.logger.info("Updated genre %s", genre_id)
        flash("Genre updated", "success")
        return redirect(genre.url)
    return render_page(GENRE_FORM_TEMPLATE, title='Update Genre', form=form)


@app.route('/catalog/genre/<int:genre_id>/delete', methods=['GET', 'POST'])
def genre_delete(genre_id):
    genre, genre_books = run_parallel(
        lambda: db.session.get(Genre, genre_id),
        lambda: Book.query.filter(Book.genres.any(Genre.id == genre_id)).order_by(Book.title).all(),
    )
    if genre is None:
        return redirect(url_for('genre_list'))
    if request.method == 'POST':
        if genre_books:
            app.logger.warning("Refused to delete genre %s: %d books remain", genre_id, len(genre_books))
        else:
            db.session.delete(db.session.get(Genre, genre_id))
            db.session.commit()
            app.logger.info("Deleted genre %s", genre_id)
            flash("Genre deleted", "success")
            return redirect(url_for('genre_list'))
    return render_page(GENRE_DELETE_TEMPLATE, title='Delete Genre', genre=genre, genre_books=genre_books)


# --- Views: books ---
@app.route('/catalog/books')
def book_list():
    books = Book.query.options(joinedload(Book.author)).order_by(Book.title).all()
    return render_page(BOOK_LIST_TEMPLATE, title='Book List', book_list=books)


def load_book(book_id):
    return (
        Book.query.options(joinedload(Book.author), selectinload(Book.genres))
        .filter_by(id=book_id)
        .first()
    )


@app.route('/catalog/book/<int:book_id>')
def book_detail(book_id):
    book, book_instances = run_parallel(
        lambda: load_book(book_id),
        lambda: BookInstance.query.filter_by(book_id=book_id).all(),
    )
    if book is None:
        abort(404, description='Book not found')
    return render_page(BOOK_DETAIL_TEMPLATE, title=book.title, book=book, book_instances=book_instances)


@app.route('/catalog/book/create', methods=['GET', 'POST'])
def book_create():
    authors, genres = run_parallel(ordered_authors, ordered_genres)
    form = BookForm()
    set_book_choices(form, authors, genres)
    if form.validate_on_submit():
        book = Book(
            title=form.title.data,
            author_id=form.author.data,
            summary=form.summary.data,
            isbn=form.isbn.data,
            genres=load_genres(form.genre.data),
        )
        db.session.add(book)
        db.session.commit()
        app.logger.info("Created book %s", book.id)
        flash("Book created", "success")
        return redirect(book.url)
    return render_page(BOOK_FORM_TEMPLATE, title='Create Book', form=form)


@app.route('/catalog/book/<int:book_id>/update', methods=['GET', 'POST'])
def book_update(book_id):
    book, authors, genres = run_parallel(lambda: load_book(book_id), ordered_authors, ordered_genres)
    if book is None:
        abort(404, description='Book not found')
    form = BookForm(
        title=book.title,
        author=book.author_id,
        summary=book.summary,
        isbn=book.isbn,
        genre=[g.id for g in book.genres],
    )
    set_book_choices(form, authors, genres)
    if form.validate_on_submit():
        book = db.session.merge(Book(
            id=book_id,
            title=form.title.data,
            author_id=form.author.data,
            summary=form.summary.data,
            isbn=form.isbn.data,
        ))
        book.genres = load_genres(form.genre.data)
        db.session.commit()
        app.logger.info("Updated book %s", book_id)
        flash("Book updated", "success")
        return redirect(book.url)
    return render_page(BOOK_FORM_TEMPLATE, title='Update Book', form=form)


@app.route('/catalog/book/<int:book_id>/delete', methods=['GET', 'POST'])
def book_delete(book_id):
    book, book_instances = run_parallel(
        lambda: load_book(book_id),
        lambda: BookInstance.query.filter_by(book_id=book_id).all(),
    )
    if book is None:
        return redirect(url_for('book_list'))
    if request.method == 'POST':
        if book_instances:
            app.logger.warning("Refused to delete book %s: %d copies remain", book_id, len(book_instances))
        else:
            db.session.delete(db.session.get(Book, book_id))
            db.session.commit()
            app.logger.info("Deleted book %s", book_id)
            flash("Book deleted", "success")
            return redirect(url_for('book_list'))
    return render_page(BOOK_DELETE_TEMPLATE, title='Delete Book', book=book, book_instances=book_instances)


# --- Views: book instances ---
@app.route('/catalog/bookinstances')
def bookinstance_list():
    copies = BookInstance.query.options(joinedload(BookInstance.book)).all()
    return render_page(BOOKINSTANCE_LIST_TEMPLATE, title='Book Instance List', bookinstance_list=copies)


def load_bookinstance(bookinstance_id):
    return (
        BookInstance.query.options(joinedload(BookInstance.book))
        .filter_by(id=bookinstance_id)
        .first()
    )


@app.route('/catalog/bookinstance/<int:bookinstance_id>')
def bookinstance_detail(bookinstance_id):
    bookinstance = load_bookinstance(bookinstance_id)
    if bookinstance is None:
        abort(404, description='Book copy not found')
    return render_page(BOOKINSTANCE_DETAIL_TEMPLATE, title=f"Copy: {bookinstance.book.title}",
                       bookinstance=bookinstance)


@app.route('/catalog/bookinstance/create', methods=['GET', 'POST'])
def bookinstance_create():
    form = BookInstanceForm()
    form.book.choices = [(b.id, b.title) for b in ordered_books()]
    if form.validate_on_submit():
        bookinstance = BookInstance(
            book_id=form.book.data,
            imprint=form.imprint.data,
            status=form.status.data,
            due_back=form.due_back.data or date.today(),
        )
        db.session.add(bookinstance)
        db.session.commit()
        app.logger.info("Created book copy %s", bookinstance.id)
        flash("Book copy created", "success")
        return redirect(bookinstance.url)
    return render_page(BOOKINSTANCE_FORM_TEMPLATE, title='Create BookInstance', form=form)


@app.route('/catalog/bookinstance/<int:bookinstance_id>/update', methods=['GET', 'POST'])
def bookinstance_update(bookinstance_id):
    bookinstance, books = run_parallel(lambda: load_bookinstance(bookinstance_id), ordered_books)
    if bookinstance is None:
        abort(404, description='Book copy not found')
    form = BookInstanceForm(
        book=bookinstance.book_id,
        imprint=bookinstance.imprint,
        status=bookinstance.status,
        due_back=bookinstance.due_back,
    )
    form.book.choices = [(b.id, b.title) for b in books]
    if form.validate_on_submit():
        bookinstance = db.session.merge(BookInstance(
            id=bookinstance_id,
            book_id=form.book.data,
            imprint=form.imprint.data,
            status=form.status.data,
            due_back=form.due_back.data or date.today(),
        ))
        db.session.commit()
        app.logger.info("Updated book copy %s", bookinstance_id)
        flash("Book copy updated", "success")
        return redirect(bookinstance.url)
    return render_page(BOOKINSTANCE_FORM_TEMPLATE, title='Update BookInstance', form=form)


@app.route('/catalog/bookinstance/<int:bookinstance_id>/delete', methods=['GET', 'POST'])
def bookinstance_delete(bookinstance_id):
    bookinstance = load_bookinstance(bookinstance_id)
    if bookinstance is None:
        return redirect(url_for('bookinstance_list'))
    if request.method == 'POST':
        db.session.delete(bookinstance)
        db.session.commit()
        app.logger.info("Deleted book copy %s", bookinstance_id)
        flash("Book copy deleted", "success")
        return redirect(url_for('bookinstance_list'))
    return render_page(BOOKINSTANCE_DELETE_TEMPLATE, title='Delete BookInstance', bookinstance=bookinstance)


# --- Error handlers ---
@app.errorhandler(404)
def not_found(e):
    return render_page(ERROR_TEMPLATE, title='Not Found', message=e.description, status=404), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return render_page(ERROR_TEMPLATE, title='Method Not Allowed', message=e.description, status=405), 405


@app.errorhandler(SQLAlchemyError)
def database_error(e):
    db.session.rollback()
    app.logger.error("Database error on %s %s", request.method, request.path, exc_info=e)
    return render_page(ERROR_TEMPLATE, title='Database Error',
                       message='The catalog database could not complete the request.', status=500), 500


# --- CLI helpers ---
SAMPLE_AUTHORS = [
    ("Patrick", "Rothfuss", "1973-06-06", None),
    ("Ben", "Bova", "1932-11-08", "2020-11-29"),
    ("Isaac", "Asimov", "1920-01-02", "1992-04-06"),
]

SAMPLE_BOOKS = [
    ("The Name of the Wind (The Kingkiller Chronicle, #1)", "Rothfuss", "9781473211896", ["Fantasy"],
     "I have stolen princesses back from sleeping barrow kings. I burned down the town of Trebon."),
    ("Apes and Angels", "Bova", "9780765379528", ["Science Fiction"],
     "Humankind headed out to the stars not for conquest, nor exploration, nor even for curiosity."),
    ("The Wise Man's Fear (The Kingkiller Chronicle, #2)", "Rothfuss", "9788401352836", ["Fantasy"],
     "Picking up the tale of Kvothe Kingkiller once again, we follow him into exile."),
]


@app.cli.command("init-db")
def init_db():
    """Create the catalog tables."""
    db.create_all()
    print("Initialized the catalog database.")


@app.cli.command("seed")
def seed_db():
    """Load a small sample catalog (for dev only)."""
    db.create_all()
    if Author.query.first():
        print("Catalog already has data.")
        return
    authors = {}
    for first_name, family_name, born, died in SAMPLE_AUTHORS:
        authors[family_name] = Author(
            first_name=first_name,
            family_name=family_name,
            date_of_birth=dateparse(born).date() if born else None,
            date_of_death=dateparse(died).date() if died else None,
        )
    genres = {name: Genre(name=name) for name in ("Fantasy", "Science Fiction", "French Poetry")}
    books = []
    for title, family_name, isbn, genre_names, summary in SAMPLE_BOOKS:
        books.append(Book(title=title, author=authors[family_name], isbn=isbn, summary=summary,
                          genres=[genres[n] for n in genre_names]))
    copies = [
        BookInstance(book=books[0], imprint="London Gollancz, 2014.", status="Available"),
        BookInstance(book=books[1], imprint="Gollancz, 2011.", status="Loaned",
                     due_back=dateparse("2026-11-01").date()),
        BookInstance(book=books[2], imprint="New York Tom Doherty Associates, 2016.", status="Maintenance"),
    ]
    db.session.add_all(list(authors.values()) + list(genres.values()) + books + copies)
    db.session.commit()
    print(f"Seeded {len(authors)} authors, {len(genres)} genres, {len(books)} books, {len(copies)} copies.")


if __name__ == '__main__':
    with app.app_context():
        db.create_all()
    app.run(debug=True)
