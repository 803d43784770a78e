"""Forms for the murmuration blueprint."""

from flask_wtf import FlaskForm
from wtforms import IntegerField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Length, NumberRange, Optional

from murmurations.core.constants import (
    DESCRIPTION_MAX,
    NAME_MAX,
    NAME_MIN,
    PRIVACY_MODES,
    TAG_MAX,
    TAG_MIN,
)


class MurmurationForm(FlaskForm):
    """Form for founding a murmuration."""

    name = StringField(
        "Name", validators=[DataRequired(), Length(min=NAME_MIN, max=NAME_MAX)]
    )
    tag = StringField("Tag", validators=[DataRequired(), Length(min=TAG_MIN, max=TAG_MAX)])
    privacy = SelectField(
        "Privacy", choices=[(mode, mode) for mode in PRIVACY_MODES], default="open"
    )
    description = TextAreaField(
        "Description", validators=[Optional(), Length(max=DESCRIPTION_MAX)]
    )


class UpdateMurmurationForm(FlaskForm):
    """Form for changing settings; every field is optional."""

    name = StringField("Name", validators=[Optional(), Length(min=NAME_MIN, max=NAME_MAX)])
    tag = StringField("Tag", validators=[Optional(), Length(min=TAG_MIN, max=TAG_MAX)])
    privacy = StringField("Privacy", validators=[Optional()])
    description = TextAreaField(
        "Description", validators=[Optional(), Length(max=DESCRIPTION_MAX)]
    )


class InvitePlayerForm(FlaskForm):
    """Form for inviting a player by id."""

    user_id = StringField("Player", validators=[DataRequired()])


class RoleForm(FlaskForm):
    """Form for promoting or demoting a member."""

    role = SelectField(
        "Role", choices=[("deputy", "Deputy"), ("recruit", "Recruit")]
    )


class ChallengeProgressForm(FlaskForm):
    """Form for reporting challenge progress."""

    amount = IntegerField("Amount", validators=[DataRequired(), NumberRange(min=1)])
