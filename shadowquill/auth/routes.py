from __future__ import annotations

from flask import current_app, flash, jsonify, redirect, render_template, request, url_for
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy.exc import IntegrityError

from ..extensions import csrf, db, login_manager
from ..models import User
from ..session import StorySession
from . import bp
from .forms import LoginForm, RegistrationForm


@bp.route("/register", methods=["GET", "POST"])
def register():
    if current_user.is_authenticated:
        return redirect(url_for("main.dashboard"))

    form = RegistrationForm()
    if form.validate_on_submit():
        user = User(email=form.email.data.strip().lower(), display_name=form.display_name.data.strip())
        user.set_password(form.password.data)
        db.session.add(user)
        db.session.commit()
        flash("Account created successfully. Please sign in.", "success")
        return redirect(url_for("auth.login"))

    return render_template("auth/register.html", form=form)


@bp.route("/api/auth/register", methods=["POST"])
@csrf.exempt
def api_register():
    payload = request.get_json(silent=True) or {}
    email = payload.get("email")
    password = payload.get("password")
    name = payload.get("name")

    if not isinstance(email, str) or not email.strip() or not isinstance(password, str) or not password:
        return jsonify({"error": "Missing email or password."}), 400

    normalized_email = email.strip().lower()
    if User.query.filter_by(email=normalized_email).first():
        return jsonify({"error": "User already exists."}), 409

    display_name = name.strip() if isinstance(name, str) and name.strip() else normalized_email.split("@")[0]
    user = User(email=normalized_email, display_name=display_name)
    user.set_password(password)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "User already exists."}), 409

    current_app.logger.info("Registered user %s", user.id)
    return jsonify(user.to_dict()), 201


@bp.route("/login", methods=["GET", "POST"])
def login():
    if current_user.is_authenticated:
        return redirect(url_for("main.dashboard"))

    form = LoginForm()
    if form.validate_on_submit():
        user = User.query.filter_by(email=form.email.data.strip().lower()).first()
        if user and user.check_password(form.password.data):
            login_user(user)
            flash(f"Welcome back, {user.display_name}!", "success")
            next_page = request.args.get("next")
            if not next_page or not next_page.startswith("/") or next_page.startswith("//"):
                next_page = url_for("main.dashboard")
            return redirect(next_page)

        flash("Invalid email or password.", "danger")

    return render_template("auth/login.html", form=form)


@bp.route("/logout")
@login_required
def logout():
    StorySession.current().clear()
    logout_user()
    flash("You have been signed out.", "info")
    return redirect(url_for("auth.login"))


@login_manager.unauthorized_handler
def unauthorized():
    if request.path.startswith("/api/"):
        return jsonify({"error": "Unauthorized"}), 401
    flash("Please sign in to access this page.", "info")
    return redirect(url_for("auth.login", next=request.path))
