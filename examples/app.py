from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy

from flask_munchauth import MunchAuth, SQLAlchemyStorageAdapter, login_required, get_current_user

app = Flask(__name__)
app.config["SECRET_KEY"] = "dev-secret-change-in-production"
app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///munch.db"
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False

# Links are logged instead of mailed
app.config["MUNCH_DEV_MODE"] = True
app.config["MUNCH_RP_NAME"] = "MunchAI"
app.config["MUNCH_ORIGIN"] = "http://localhost:5000"

db = SQLAlchemy(app)


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    name = db.Column(db.String(255))
    email_verified = db.Column(db.DateTime)


with app.app_context():
    db.create_all()
    storage = SQLAlchemyStorageAdapter(User, db.session, app.config["SECRET_KEY"])
    munch = MunchAuth(app, storage_adapter=storage)


LOGIN_PAGE = """
<!doctype html>
<title>Sign in</title>
<h1>Sign in to MunchAI</h1>
<form id="magic">
  <input name="email" type="email" placeholder="you@example.com" required>
  <button>Email me a link</button>
</form>
<p id="status"></p>
<script>
const api = (path, body) => fetch('/api/auth' + path, {
  method: 'POST',
  headers: {'Content-Type': 'application/json'},
  body: JSON.stringify(body),
}).then(r => r.json());

const params = new URLSearchParams(location.search);
const status = document.getElementById('status');

if (params.get('loginToken')) {
  api('/session', {loginToken: params.get('loginToken')})
    .then(r => r.success ? location.assign('/') : status.textContent = r.error.message);
} else if (params.get('error')) {
  status.textContent = 'Sign-in failed: ' + params.get('error');
}

document.getElementById('magic').onsubmit = async (e) => {
  e.preventDefault();
  const email = e.target.email.value;
  const started = await api('/magic-link/start', {email});
  if (!started.success) { status.textContent = started.error.message; return; }
  status.textContent = 'Check your email (or the server log).';

  // Finish here if the link is opened in another tab or device
  const timer = setInterval(async () => {
    const res = await fetch('/api/auth/magic-link/poll?requestId=' + started.data.requestId)
      .then(r => r.json());
    if (!res.success) { clearInterval(timer); status.textContent = res.error.message; return; }
    if (res.data.token) {
      clearInterval(timer);
      const session = await api('/session', {loginToken: res.data.token});
      if (session.success) location.assign('/');
    }
  }, 2000);
};
</script>
"""


@app.route("/")
@login_required
def index():
    user = get_current_user()
    return jsonify({"hello": user["name"] or user["email"]})


@app.route("/login")
def login():
    return LOGIN_PAGE


if __name__ == "__main__":
    app.run(debug=True)
