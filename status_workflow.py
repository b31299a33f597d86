"""
Status workflows
Allowed status transitions for every workflow entity, checked in one place
"""

from validators import ValidationError

# ===== TRANSITION TABLES =====

SCHEDULE_TRANSITIONS = {
    'draft': ['scheduled', 'cancelled'],
    'scheduled': ['in_progress', 'cancelled'],
    'in_progress': ['completed', 'cancelled'],
    'completed': [],
    'cancelled': ['scheduled'],
}

INVIGILATOR_TRANSITIONS = {
    'draft': ['assigned'],
    'assigned': ['confirmed', 'draft'],
    'confirmed': ['completed'],
    'completed': [],
}

MATERIAL_TRANSITIONS = {
    'preparation': ['ready'],
    'ready': ['distributed'],
    'distributed': ['collected'],
    'collected': ['archived'],
    'archived': [],
}

ATTENDANCE_TRANSITIONS = {
    'preparation': ['in_progress'],
    'in_progress': ['completed'],
    'completed': ['submitted'],
    'submitted': [],
}

REGISTRATION_TRANSITIONS = {
    'draft': ['submitted', 'payment_pending'],
    'payment_pending': ['submitted', 'draft'],
    'submitted': ['approved', 'rejected', 'draft'],
    'approved': [],
    'rejected': ['draft'],
}

SCHOOL_TRANSITIONS = {
    'draft': ['submitted'],
    'submitted': ['under_review', 'approved', 'rejected', 'draft'],
    'under_review': ['approved', 'rejected', 'submitted'],
    'approved': ['suspended'],
    'rejected': ['draft'],
    'suspended': ['approved'],
}

INCIDENT_TRANSITIONS = {
    'open': ['investigating', 'resolved', 'closed'],
    'investigating': ['resolved', 'closed'],
    'resolved': ['closed', 'investigating'],
    'closed': [],
}

SCRIPT_TRANSITIONS = {
    'allocated': ['in_progress'],
    'in_progress': ['marked'],
    'marked': ['verified', 'in_progress'],
    'verified': [],
}

GRADE_CALCULATION_TRANSITIONS = {
    'draft': ['calculated'],
    'calculated': ['reviewed', 'draft'],
    'reviewed': ['approved', 'calculated'],
    'approved': ['published'],
    'published': [],
}

BOUNDARY_APPROVAL_TRANSITIONS = {
    'draft': ['pending_review'],
    'pending_review': ['reviewed', 'draft'],
    'reviewed': ['approved', 'pending_review'],
    'approved': ['published'],
    'published': [],
}

NORMALIZATION_TRANSITIONS = {
    'draft': ['pending_review'],
    'pending_review': ['reviewed', 'draft'],
    'reviewed': ['approved', 'pending_review'],
    'approved': ['applied'],
    'applied': [],
}

# Ordered status vocabularies that are not transition-checked
MARKING_STATUS_ORDER = ['draft', 'submitted', 'verified', 'moderated', 'finalized']
MARKING_TYPE_ORDER = ['first', 'second', 'moderation', 'chief_review']
PAYMENT_STATUSES = ('pending', 'processing', 'completed', 'failed', 'cancelled', 'refunded')
RESULT_STATUSES = ('draft', 'generated', 'verified', 'published', 'archived')
CENTRE_STATUSES = ('active', 'inactive', 'suspended')


def can_transition(transitions, current, new):
    """True when `new` is reachable from `current` in one step"""
    return new in transitions.get(current, [])


def check_transition(transitions, current, new, entity='record'):
    """
    Validate a status change.
    Raises:
        ValidationError naming the disallowed transition
    """
    if new not in transitions:
        raise ValidationError('status', f"Invalid {entity} status: {new}")
    if current == new:
        return new
    if not can_transition(transitions, current, new):
        raise ValidationError('status', f"Invalid status transition from {current} to {new}")
    return new


def highest_status(statuses, order=MARKING_STATUS_ORDER):
    """The most advanced status present, following `order`"""
    ranked = [s for s in statuses if s in order]
    if not ranked:
        return order[0]
    return max(ranked, key=order.index)
