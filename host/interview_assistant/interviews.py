# interview_assistant/interviews.py
"""
Interview types, system prompts and question banks
"""

from dataclasses import dataclass, field
from typing import Dict, List


@dataclass(frozen=True)
class Question:
    id: str
    text: str


@dataclass(frozen=True)
class InterviewType:
    id: str
    name: str
    description: str
    system_prompt: str
    welcome: str
    questions: List[Question] = field(default_factory=list)


CONTROL_INSTRUCTIONS = """
You can control the interview with two functions:
- switch_question: call it when the current question is not working well (the candidate is stuck, off topic, or asks for another one).
- end_interview: call it when the interview should end (the candidate is clearly unsuitable, asks to stop, or the interview has run its course).
Always say something to the candidate as well when you call a function."""


def _bank(prefix: str, questions: List[str]) -> List[Question]:
    return [Question(id=f"{prefix}-{i}", text=q) for i, q in enumerate(questions, start=1)]


INTERVIEW_TYPES: Dict[str, InterviewType] = {
    "product-sense": InterviewType(
        id="product-sense",
        name="Product Sense Interview",
        description="Tests product thinking, design, strategy, and problem-solving for Product Managers.",
        system_prompt=(
            "You are an experienced Product Manager interviewer conducting a product sense interview. "
            "Evaluate how the candidate frames problems, considers user needs, defines success metrics, "
            "prioritizes features and reasons about tradeoffs. Challenge assumptions respectfully and "
            "add new constraints to see how they adapt. Keep questions and follow-ups concise and "
            "speak in a natural, conversational tone." + CONTROL_INSTRUCTIONS
        ),
        welcome="Welcome to your product sense interview. Let's get started.",
        questions=_bank("ps", [
            "Design a feature that helps people track and reduce their digital screen time. How would you approach this?",
            "How would you improve the experience of finding a parking spot in a busy city?",
            "Pick a product you use every day. What would you change about it and why?",
            "How would you design a product for elderly people living alone?",
            "How would you define success for a new onboarding flow in a fitness app?",
        ]),
    ),
    "scrum-master": InterviewType(
        id="scrum-master",
        name="Scrum Master Interview",
        description="Evaluates Agile knowledge, facilitation skills, and team coaching abilities.",
        system_prompt=(
            "You are an experienced Agile Coach interviewing a candidate for a Scrum Master position. "
            "Keep your responses extremely concise, one to three sentences. Briefly acknowledge each "
            "answer and follow up with your next question. Cover ceremony facilitation, impediment "
            "removal, team coaching, stakeholder management, conflict resolution and metrics."
            + CONTROL_INSTRUCTIONS
        ),
        welcome="Hi, I'm interviewing you for the Scrum Master role today.",
        questions=_bank("sm", [
            "How would you help a team that consistently overcommits and misses Sprint goals?",
            "How do you measure team capacity?",
            "What's your technique for facilitating effective Sprint Retrospectives?",
            "How do you handle resistant team members?",
            "How do you maintain focus when priorities change mid-sprint?",
            "Give me a specific example of how you've coached a Product Owner.",
        ]),
    ),
    "behavioral": InterviewType(
        id="behavioral",
        name="Behavioral Interview",
        description="Assesses soft skills, leadership, teamwork, and cultural fit using the STAR method.",
        system_prompt=(
            "You are an HR interviewer conducting a behavioral interview using the STAR method "
            "(Situation, Task, Action, Result). Ask questions that start with 'Tell me about a time "
            "when...', probe for missing STAR elements, and ask about the candidate's role, decisions "
            "and outcomes. Keep responses brief and ask one question at a time." + CONTROL_INSTRUCTIONS
        ),
        welcome="Thanks for joining this behavioral interview.",
        questions=_bank("bh", [
            "Tell me about a time when you had to work with a difficult team member. How did you handle it?",
            "Describe a situation where you had to meet a tight deadline with limited resources.",
            "Tell me about a time you failed at something. What did you learn?",
            "Give me an example of when you had to convince someone to see your point of view.",
            "Tell me about a project you led. What challenges did you face?",
            "Share an example of when you received critical feedback. How did you respond?",
        ]),
    ),
    "technical-pm": InterviewType(
        id="technical-pm",
        name="Technical PM Interview",
        description="Evaluates technical depth, system design thinking, and API/data understanding.",
        system_prompt=(
            "You are a Senior Technical Product Manager interviewing a candidate for a Technical PM "
            "role. Evaluate architecture and system design thinking, API and data modeling, "
            "scalability, technical tradeoffs and the ability to explain technical decisions to "
            "non-technical stakeholders. Focus on product thinking rather than pure engineering."
            + CONTROL_INSTRUCTIONS
        ),
        welcome="Welcome to the technical product management interview.",
        questions=_bank("tpm", [
            "Walk me through the technical architecture of a recommendation system for a video streaming platform.",
            "How would you design the API for a ride-sharing app's trip history?",
            "How would you scale a notification system to millions of users?",
            "How would you A/B test two ranking algorithms?",
            "What would your data pipeline look like for a real-time analytics dashboard?",
        ]),
    ),
}


def get_interview_type(interview_type: str) -> InterviewType:
    try:
        return INTERVIEW_TYPES[interview_type]
    except KeyError:
        raise ValueError(
            f"Unknown interview type: {interview_type}. "
            f"Available types: {', '.join(INTERVIEW_TYPES)}"
        )
