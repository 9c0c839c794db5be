from flask_wtf import FlaskForm
from wtforms import StringField, SubmitField
from wtforms.validators import InputRequired, Length, Optional


class StoryForm(FlaskForm):
    title = StringField("Story title", validators=[Optional(), Length(max=150)])
    submit = SubmitField("Create story")


class RenameStoryForm(FlaskForm):
    title = StringField("New title", validators=[InputRequired(), Length(max=150)])
    submit = SubmitField("Rename")
